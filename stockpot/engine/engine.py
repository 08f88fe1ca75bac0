"""AgentEngine: the tool-calling loop.

One run drives one agent over one conversation:

    send conversation + tool schemas to the model client
    collect text and tool calls from the delta stream
    no tool calls      -> done
    tool calls         -> dispatch them, append results in request order,
                          go round again

A run is bounded by max_iterations and stops early when the cancel
event is set. Every exit path returns a TerminalOutcome carrying the
transcript so far; nothing about a run raises to the caller except
cancellation of the awaiting task itself.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .config import EngineConfig, fire_event
from .errors import ErrorKind, ModelClientError
from .model_client import EndOfTurn, ModelClient, TextDelta, ToolCallDelta
from .models import (
    AgentDefinition,
    Conversation,
    Message,
    RunState,
    TerminalOutcome,
    ToolCallRequest,
    ToolResult,
    _make_id,
)
from .tool_registry import ToolContext, ToolRegistry
from .tools.paths import WorkTree

logger = logging.getLogger(__name__)

_TERMINAL_ERROR_KIND = {
    RunState.ITERATION_LIMIT_REACHED: ErrorKind.ITERATION_LIMIT_REACHED,
    RunState.RECURSION_LIMIT_REACHED: ErrorKind.RECURSION_LIMIT_REACHED,
    RunState.CANCELLED: ErrorKind.CANCELLED,
    RunState.ERROR: ErrorKind.MODEL_CLIENT_ERROR,
}


def _unique_call_ids(calls: list[ToolCallRequest]) -> list[ToolCallRequest]:
    seen: set[str] = set()
    for call in calls:
        base = call.call_id or f"call_{_make_id()[:8]}"
        candidate = base
        suffix = 1
        while candidate in seen:
            suffix += 1
            candidate = f"{base}_{suffix}"
        if candidate != call.call_id:
            logger.debug("Renamed tool call id %r -> %r", call.call_id, candidate)
            call.call_id = candidate
        seen.add(candidate)
    return calls


class AgentEngine:
    """Runs agents against a tool registry.

    ``depth`` is the sub-agent nesting level of runs started by this
    engine; the top-level engine is depth 0.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        config: EngineConfig | None = None,
        *,
        depth: int = 0,
        work_tree: WorkTree | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or EngineConfig()
        self._depth = depth
        self._work_tree = work_tree or WorkTree(Path(self._config.working_dir))

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def depth(self) -> int:
        return self._depth

    @property
    def work_tree(self) -> WorkTree:
        return self._work_tree

    async def _emit(self, run_id: str, event: str, **data) -> None:
        await fire_event(
            self._config.event_callback,
            {"event": event, "run_id": run_id, "depth": self._depth, **data},
        )

    async def run(
        self,
        agent: AgentDefinition,
        conversation: Conversation,
        model_client: ModelClient,
        cancel_event: asyncio.Event | None = None,
        *,
        run_id: str | None = None,
    ) -> TerminalOutcome:
        """Drive ``agent`` until it stops calling tools or a limit is hit."""
        run_id = run_id or _make_id()
        transcript: Conversation = list(conversation)
        cancel_event = cancel_event or asyncio.Event()
        final_text = ""
        iterations = 0

        logger.info(
            "Run %s starting agent=%s depth=%d messages=%d",
            run_id[:8], agent.name, self._depth, len(transcript),
        )
        await self._emit(run_id, "run_started", agent=agent.name)

        if self._depth > self._config.max_nesting_depth:
            return await self._finish(
                run_id, RunState.RECURSION_LIMIT_REACHED, transcript, final_text,
                iterations,
                f"depth {self._depth} exceeds max {self._config.max_nesting_depth}",
            )

        while iterations < self._config.max_iterations:
            if cancel_event.is_set():
                return await self._finish(
                    run_id, RunState.CANCELLED, transcript, final_text, iterations,
                    "run cancelled",
                )
            iterations += 1

            text_parts: list[str] = []
            calls: list[ToolCallRequest] = []
            try:
                stream = model_client.send(
                    agent.system_prompt,
                    list(transcript),
                    self._registry.schemas_for(agent),
                )
                async for delta in stream:
                    if isinstance(delta, TextDelta):
                        if delta.text:
                            text_parts.append(delta.text)
                            await self._emit(
                                run_id, "text_delta", agent=agent.name, text=delta.text
                            )
                    elif isinstance(delta, ToolCallDelta):
                        calls.append(ToolCallRequest(
                            delta.call_id, delta.tool_name, dict(delta.arguments or {})
                        ))
                    elif isinstance(delta, EndOfTurn):
                        break
                    if cancel_event.is_set():
                        break
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.exception("Run %s: model client %s failed", run_id[:8], model_client.name)
                error = exc if isinstance(exc, ModelClientError) else ModelClientError(
                    f"{type(exc).__name__}: {exc}"
                )
                if text_parts:
                    transcript.append(Message.assistant("".join(text_parts)))
                return await self._finish(
                    run_id, RunState.ERROR, transcript, final_text, iterations, str(error),
                )

            text = "".join(text_parts)
            if text:
                final_text = text

            if cancel_event.is_set():
                # The turn was cut short; tool calls from it are dropped.
                if text:
                    transcript.append(Message.assistant(text))
                return await self._finish(
                    run_id, RunState.CANCELLED, transcript, final_text, iterations,
                    "run cancelled",
                )

            calls = _unique_call_ids(calls)
            transcript.append(Message.assistant(text, calls))
            if not calls:
                return await self._finish(
                    run_id, RunState.DONE, transcript, final_text, iterations
                )

            logger.info(
                "Run %s iteration %d: %d tool call(s): %s",
                run_id[:8], iterations, len(calls),
                ", ".join(c.tool_name for c in calls),
            )
            results = await self._dispatch_all(
                run_id, agent, calls, cancel_event, model_client
            )
            transcript.extend(Message.from_result(r) for r in results)

        return await self._finish(
            run_id, RunState.ITERATION_LIMIT_REACHED, transcript, final_text,
            iterations, f"stopped after {iterations} iterations",
        )

    async def _dispatch_all(
        self,
        run_id: str,
        agent: AgentDefinition,
        calls: list[ToolCallRequest],
        cancel_event: asyncio.Event,
        model_client: ModelClient,
    ) -> list[ToolResult]:
        """Dispatch one turn's calls; results come back in request order."""
        limit = max(1, self._config.max_parallel_tools)
        semaphore = asyncio.Semaphore(limit)

        async def _one(call: ToolCallRequest) -> ToolResult:
            async with semaphore:
                if cancel_event.is_set():
                    return ToolResult.error(
                        call.call_id, ErrorKind.CANCELLED,
                        "run cancelled before this tool call started",
                        call.tool_name,
                    )
                await self._emit(
                    run_id, "tool_call_start",
                    agent=agent.name, call_id=call.call_id,
                    tool_name=call.tool_name, arguments=call.arguments,
                )
                context = ToolContext(
                    agent=agent,
                    call_id=call.call_id,
                    work_tree=self._work_tree,
                    config=self._config,
                    run_id=run_id,
                    depth=self._depth,
                    cancel_event=cancel_event,
                    event_callback=self._config.event_callback,
                    model_client=model_client,
                )
                result = await self._registry.dispatch(call, context)
                await self._emit(
                    run_id, "tool_call_end",
                    agent=agent.name, call_id=call.call_id,
                    tool_name=call.tool_name, status=result.status.value,
                    error_kind=result.error_kind.value if result.error_kind else None,
                    result=result.text(),
                )
                return result

        if limit == 1:
            return [await _one(call) for call in calls]
        return list(await asyncio.gather(*(_one(call) for call in calls)))

    async def _finish(
        self,
        run_id: str,
        state: RunState,
        transcript: Conversation,
        final_text: str,
        iterations: int,
        error: str | None = None,
    ) -> TerminalOutcome:
        if state == RunState.DONE:
            logger.info("Run %s done after %d iteration(s)", run_id[:8], iterations)
        else:
            logger.warning(
                "Run %s ended %s after %d iteration(s): %s",
                run_id[:8], state.value, iterations, error,
            )
            await self._emit(
                run_id, "error",
                kind=_TERMINAL_ERROR_KIND[state].value, message=error or state.value,
            )
        await self._emit(
            run_id, "complete",
            state=state.value, iterations=iterations, final_text=final_text,
        )
        return TerminalOutcome(
            run_id=run_id,
            state=state,
            conversation=transcript,
            final_text=final_text,
            iterations=iterations,
            error=error,
        )

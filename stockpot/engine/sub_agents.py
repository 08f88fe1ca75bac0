"""Sub-agent invocation.

Lets a running agent hand a prompt to another registered agent and
get its final answer back as a tool result. Each invocation runs a
fresh AgentEngine one nesting level deeper than the caller; the depth
travels explicitly through ToolContext, so the limit holds no matter
how agents call each other.

Sessions keep a sub-agent's conversation in memory so a later
invocation with the same session_id continues where the previous one
stopped. They live until the process exits.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .agent_registry import AgentRegistry
from .config import EngineConfig
from .engine import AgentEngine
from .errors import (
    AgentNotFoundError,
    ErrorKind,
    ModelClientError,
    RecursionLimitError,
    ToolInvocationError,
)
from .model_client import ModelClient
from .models import (
    Capability,
    Message,
    RunState,
    SubAgentSession,
    ToolResult,
    ToolStatus,
)
from .tool_registry import ToolContext, ToolRegistry, ToolSpec
from .tools.paths import WorkTree

logger = logging.getLogger(__name__)

# Builds a client for a pinned model name (None: the default model).
ModelClientFactory = Callable[[str | None], ModelClient]


@dataclass
class InvokeResult:
    agent_name: str
    response: str
    session_id: str | None
    success: bool
    state: RunState | None = None
    error: str | None = None
    error_kind: ErrorKind | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "agent": self.agent_name,
            "response": self.response,
            "session_id": self.session_id,
            "success": self.success,
        }
        if self.state is not None:
            payload["state"] = self.state.value
        if self.error:
            payload["error"] = self.error
        return payload


class SubAgentInvoker:
    """Runs registered agents as sub-agents and owns their sessions."""

    def __init__(
        self,
        agents: AgentRegistry,
        registry: ToolRegistry,
        config: EngineConfig | None = None,
        *,
        model_client_factory: ModelClientFactory | None = None,
        work_tree: WorkTree | None = None,
    ) -> None:
        self._agents = agents
        self._registry = registry
        self._config = config or EngineConfig()
        self._factory = model_client_factory
        self._work_tree = work_tree
        self._sessions: dict[str, SubAgentSession] = {}
        self._session_locks: dict[str, asyncio.Lock] = {}

    # ── Sessions ──

    def generate_session_id(self, base_name: str) -> str:
        """``<base_name>-<YYYYmmdd-HHMMSS>``, suffixed when already taken."""
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%d-%H%M%S")
        base = f"{base_name}-{timestamp}"
        if base not in self._sessions:
            return base
        for i in range(1, 100):
            candidate = f"{base}-{i}"
            if candidate not in self._sessions:
                return candidate
        return f"{base}-{uuid.uuid4().hex[:6]}"

    def get_session(self, session_id: str) -> SubAgentSession | None:
        return self._sessions.get(session_id)

    def list_sessions(self) -> list[SubAgentSession]:
        return list(self._sessions.values())

    def drop_session(self, session_id: str) -> bool:
        self._session_locks.pop(session_id, None)
        return self._sessions.pop(session_id, None) is not None

    def _client_for(self, model: str | None, caller_client: ModelClient | None) -> ModelClient:
        if model and self._factory is not None:
            return self._factory(model)
        if caller_client is not None:
            return caller_client.for_model(model)
        if self._factory is not None:
            return self._factory(None)
        raise ModelClientError("no model client available for sub-agent")

    # ── Invocation ──

    async def invoke(
        self,
        agent_name: str,
        prompt: str,
        *,
        session_id: str | None = None,
        depth: int = 0,
        model_client: ModelClient | None = None,
        cancel_event: asyncio.Event | None = None,
        base_name: str | None = None,
    ) -> InvokeResult:
        """Run ``agent_name`` on ``prompt`` one level below ``depth``."""
        try:
            agent = self._agents.get(agent_name)
        except AgentNotFoundError as exc:
            logger.info("invoke_agent: %s", exc)
            return InvokeResult(
                agent_name, "", session_id or None, False,
                error=str(exc), error_kind=exc.kind,
            )

        child_depth = depth + 1
        if child_depth > self._config.max_nesting_depth:
            exc = RecursionLimitError(agent_name, child_depth, self._config.max_nesting_depth)
            logger.warning("invoke_agent refused: %s", exc)
            return InvokeResult(
                agent_name, "", session_id or None, False,
                state=RunState.RECURSION_LIMIT_REACHED,
                error=str(exc), error_kind=exc.kind,
            )

        try:
            client = self._client_for(agent.model, model_client)
        except ModelClientError as exc:
            return InvokeResult(
                agent_name, "", session_id or None, False,
                error=str(exc), error_kind=exc.kind,
            )

        if not session_id:
            session_id = self.generate_session_id(base_name or agent.name)
        lock = self._session_locks.setdefault(session_id, asyncio.Lock())
        if lock.locked():
            # Busy, possibly with the very run making this call.
            exc = ToolInvocationError("invoke_agent", f"session {session_id} is already running")
            logger.warning("invoke_agent refused: %s", exc)
            return InvokeResult(
                agent_name, "", session_id, False,
                error=str(exc), error_kind=exc.kind,
            )

        async with lock:
            session = self._sessions.get(session_id)
            if session is None:
                session = SubAgentSession(session_id, agent.name)
                self._sessions[session_id] = session
                logger.info("Started sub-agent session %s for %s", session_id, agent.name)
            elif session.agent_name != agent.name:
                logger.info(
                    "Session %s continues with agent %s (was %s)",
                    session_id, agent.name, session.agent_name,
                )
                session.agent_name = agent.name

            engine = AgentEngine(
                self._registry, self._config, depth=child_depth, work_tree=self._work_tree,
            )
            conversation = [*session.conversation, Message.user(prompt)]
            logger.info(
                "Invoking sub-agent %s depth=%d session=%s history=%d",
                agent.name, child_depth, session_id, len(session.conversation),
            )
            outcome = await engine.run(agent, conversation, client, cancel_event)
            session.conversation = outcome.conversation

        return InvokeResult(
            agent_name=agent.name,
            response=outcome.final_text,
            session_id=session_id,
            success=outcome.state == RunState.DONE,
            state=outcome.state,
            error=outcome.error,
        )

    # ── Tools ──

    async def _invoke_agent_tool(self, args: dict[str, Any], ctx: ToolContext) -> ToolResult:
        result = await self.invoke(
            str(args["agent_name"]),
            str(args["prompt"]),
            session_id=args.get("session_id") or None,
            depth=ctx.depth,
            model_client=ctx.model_client,
            cancel_event=ctx.cancel_event,
        )
        if result.error_kind is not None:
            return ToolResult(
                ctx.call_id, ToolStatus.ERROR, result.to_payload(),
                error_kind=result.error_kind,
            )
        return ToolResult(ctx.call_id, ToolStatus.OK, result.to_payload())

    async def _list_agents_tool(self, args: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        return {
            "agents": [
                {
                    "name": agent.name,
                    "display_name": agent.label,
                    "description": agent.description,
                }
                for agent in self._agents.list_agents()
            ]
        }

    def tool_specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(
                name="invoke_agent",
                description=(
                    "Delegate a task to another agent and get its final answer. "
                    "Pass the returned session_id to continue the same conversation."
                ),
                handler=self._invoke_agent_tool,
                parameters={
                    "type": "object",
                    "properties": {
                        "agent_name": {"type": "string"},
                        "prompt": {"type": "string"},
                        "session_id": {"type": "string"},
                    },
                    "required": ["agent_name", "prompt"],
                },
                capability=Capability.SUB_AGENTS,
                source="sub_agents",
            ),
            ToolSpec(
                name="list_agents",
                description="List the agents available to invoke_agent.",
                handler=self._list_agents_tool,
                source="sub_agents",
            ),
        ]

    def register_tools(self, registry: ToolRegistry | None = None) -> None:
        (registry or self._registry).register_many(self.tool_specs())

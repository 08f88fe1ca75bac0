"""Shell executor and the run_shell_command tool.

Commands run through the system shell in their own process group so
that a timeout or a cancellation can stop the whole tree, not just the
shell. stdout and stderr are drained concurrently; every chunk goes to
the optional output callback as it arrives and into the buffered
result. A timeout or a non-zero exit is a normal result, not an
exception.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from ..config import EngineConfig
from ..errors import ErrorKind, ShellTimeoutError, ToolInvocationError
from ..models import Capability, ToolResult, ToolStatus
from ..tool_registry import ToolContext, ToolSpec

logger = logging.getLogger(__name__)

# Signature: async def on_output(chunk: str, stream_name: str) -> None
OutputCallback = Callable[[str, str], Awaitable[None]]

_READ_SIZE = 4096


@dataclass
class ExecutionResult:
    command: str
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None
    timed_out: bool = False
    cancelled: bool = False
    duration_seconds: float = 0.0
    truncated: bool = False

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def to_payload(self) -> dict[str, Any]:
        return {
            "command": self.command,
            "exit_code": self.exit_code,
            "success": self.success,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_seconds": round(self.duration_seconds, 3),
        }


def _trim_output(text: str, limit: int) -> tuple[str, bool]:
    if limit <= 0 or len(text) <= limit:
        return text, False
    omitted = len(text) - limit
    return f"{text[:limit]}\n... [truncated {omitted} chars]", True


def _signal_process_group(
    proc: asyncio.subprocess.Process,
    sig: signal.Signals,
) -> bool:
    """Send a signal to the process group when available."""
    if proc.returncode is not None:
        return False
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, sig)
        else:
            proc.send_signal(sig)
        return True
    except ProcessLookupError:
        return False


class ShellExecutor:
    """Runs shell commands with timeout, streaming and cancellation."""

    def __init__(
        self,
        *,
        default_timeout: float = 120.0,
        kill_grace_seconds: float = 1.0,
        max_output_chars: int = 40000,
        env: dict[str, str] | None = None,
    ) -> None:
        self._default_timeout = default_timeout
        self._kill_grace = kill_grace_seconds
        self._max_output_chars = max_output_chars
        self._env = env

    @classmethod
    def from_config(cls, config: EngineConfig) -> ShellExecutor:
        return cls(
            default_timeout=config.shell_timeout_seconds,
            kill_grace_seconds=config.shell_kill_grace_seconds,
            max_output_chars=config.shell_max_output_chars,
        )

    async def execute(
        self,
        command: str,
        working_dir: str | os.PathLike[str] | None = None,
        timeout: float | None = None,
        on_output: OutputCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ExecutionResult:
        command = str(command or "").strip()
        if not command:
            raise ToolInvocationError("run_shell_command", "command cannot be empty")
        exec_timeout = timeout if timeout and timeout > 0 else self._default_timeout
        result = ExecutionResult(command=command)
        started = time.monotonic()

        env = {**os.environ, **self._env} if self._env else None
        try:
            proc = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(working_dir) if working_dir else None,
                env=env,
                start_new_session=True,
            )
        except OSError as exc:
            raise ToolInvocationError(
                "run_shell_command", f"failed to start command: {exc}"
            ) from exc

        logger.info(
            "Started shell pid=%s timeout=%ss cwd=%s command=%s",
            proc.pid, exec_timeout, working_dir or ".",
            (command[:180] + "...") if len(command) > 180 else command,
        )

        stdout_chunks: list[str] = []
        stderr_chunks: list[str] = []

        async def _pump(stream: asyncio.StreamReader, name: str, sink: list[str]) -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            while True:
                chunk = await stream.read(_READ_SIZE)
                text = decoder.decode(chunk, final=not chunk)
                if text:
                    sink.append(text)
                    if on_output is not None:
                        try:
                            await on_output(text, name)
                        except Exception:
                            logger.debug("Shell output callback failed", exc_info=True)
                if not chunk:
                    break

        readers = [
            asyncio.create_task(_pump(proc.stdout, "stdout", stdout_chunks)),
            asyncio.create_task(_pump(proc.stderr, "stderr", stderr_chunks)),
        ]
        wait_task = asyncio.create_task(proc.wait())
        cancel_task = (
            asyncio.create_task(cancel_event.wait()) if cancel_event is not None else None
        )
        waiters = {wait_task} | ({cancel_task} if cancel_task else set())

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=exec_timeout, return_when=asyncio.FIRST_COMPLETED
            )
            if wait_task not in done:
                if cancel_task is not None and cancel_task in done:
                    result.cancelled = True
                    logger.warning("Shell command cancelled, stopping pid=%s", proc.pid)
                    await self._stop_process_group(proc, wait_task, signal.SIGINT)
                else:
                    result.timed_out = True
                    logger.warning(
                        "Shell command timed out after %ss, stopping pid=%s",
                        exec_timeout, proc.pid,
                    )
                    await self._stop_process_group(proc, wait_task, signal.SIGTERM)
            await self._drain(readers)
        except asyncio.CancelledError:
            await self._stop_process_group(proc, wait_task, signal.SIGINT)
            for task in readers:
                task.cancel()
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        result.exit_code = proc.returncode
        result.duration_seconds = time.monotonic() - started
        result.stdout, cut_out = _trim_output("".join(stdout_chunks), self._max_output_chars)
        result.stderr, cut_err = _trim_output("".join(stderr_chunks), self._max_output_chars)
        result.truncated = cut_out or cut_err
        logger.info(
            "Shell pid=%s finished exit=%s timed_out=%s cancelled=%s in %.2fs",
            proc.pid, result.exit_code, result.timed_out,
            result.cancelled, result.duration_seconds,
        )
        return result

    async def _stop_process_group(
        self,
        proc: asyncio.subprocess.Process,
        wait_task: asyncio.Task[int],
        first_signal: signal.Signals,
    ) -> None:
        """Escalate stop signals until the process group is gone."""
        escalation = [first_signal]
        if first_signal == signal.SIGINT:
            escalation.append(signal.SIGTERM)
        escalation.append(signal.SIGKILL)

        for sig in escalation:
            if wait_task.done():
                return
            if not _signal_process_group(proc, sig):
                try:
                    proc.send_signal(sig)
                except ProcessLookupError:
                    pass
            try:
                await asyncio.wait_for(asyncio.shield(wait_task), self._kill_grace)
                return
            except asyncio.TimeoutError:
                logger.warning(
                    "Shell pid=%s still running after %s; escalating", proc.pid, sig.name
                )
        await wait_task

    async def _drain(self, readers: list[asyncio.Task[None]]) -> None:
        # A background grandchild can keep the pipes open after the shell
        # exits; stop reading once the grace period is over.
        done, pending = await asyncio.wait(readers, timeout=max(self._kill_grace, 0.1) * 5)
        for task in pending:
            task.cancel()
        await asyncio.gather(*readers, return_exceptions=True)


# ── Tool ───────────────────────────────────────────────────────────


async def run_shell_command(args: dict[str, Any], ctx: ToolContext) -> ToolResult:
    command = str(args.get("command") or "").strip()
    if not command:
        raise ToolInvocationError("run_shell_command", "command cannot be empty")
    cwd = ctx.work_tree.resolve(args.get("working_directory") or ".", "run_shell_command")
    if not cwd.is_dir():
        raise ToolInvocationError(
            "run_shell_command", f"working directory does not exist: {cwd}"
        )

    async def _emit_delta(chunk: str, stream_name: str) -> None:
        await ctx.emit(
            "tool_call_delta",
            call_id=ctx.call_id,
            tool_name="run_shell_command",
            delta=chunk,
            stream=stream_name,
        )

    executor = ShellExecutor.from_config(ctx.config)
    result = await executor.execute(
        command,
        working_dir=cwd,
        timeout=args.get("timeout_seconds"),
        on_output=_emit_delta,
        cancel_event=ctx.cancel_event,
    )
    payload = result.to_payload()
    if result.cancelled:
        return ToolResult(ctx.call_id, ToolStatus.ERROR, payload, error_kind=ErrorKind.CANCELLED)
    if result.timed_out:
        timeout = args.get("timeout_seconds") or ctx.config.shell_timeout_seconds
        error = ShellTimeoutError(command, timeout)
        payload["error"] = str(error)
        return ToolResult(ctx.call_id, ToolStatus.ERROR, payload, error_kind=error.kind)
    if result.exit_code != 0:
        return ToolResult(
            ctx.call_id, ToolStatus.OK, payload, error_kind=ErrorKind.SHELL_NON_ZERO_EXIT
        )
    return ToolResult(ctx.call_id, ToolStatus.OK, payload)


SHELL_TOOLS = [
    ToolSpec(
        name="run_shell_command",
        description=(
            "Run a shell command in the project and return its exit code, "
            "stdout and stderr. Output is streamed while the command runs."
        ),
        handler=run_shell_command,
        parameters={
            "type": "object",
            "properties": {
                "command": {"type": "string", "description": "Command line to run"},
                "working_directory": {
                    "type": "string",
                    "description": "Directory to run in, relative to the project root",
                },
                "timeout_seconds": {
                    "type": "number",
                    "description": "Kill the command after this many seconds",
                },
            },
            "required": ["command"],
        },
        capability=Capability.SHELL,
        streaming=True,
    ),
]

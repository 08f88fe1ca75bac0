"""Tool server supervisor.

Owns every external tool server process: spawning, the list_tools
handshake, registering the advertised tools, forwarding calls, and
tearing processes down. Each server moves through the states in
lifecycle.py; a server that fails keeps a diagnostic (reason plus the
tail of its stderr) until it is started again.

Tools are registered under ``<server>__<tool>`` and require the
``mcp`` capability. ``apply_config`` is the hot-reload entry point:
it stops removed servers, restarts changed ones, starts new ones and
leaves everything else alone.
"""
from __future__ import annotations

import asyncio
import collections
import logging
import os
import re
import signal
import time
from dataclasses import dataclass, field
from typing import Any

from ..config import EngineConfig, fire_event
from ..errors import (
    ServerUnavailableError,
    ToolNameCollisionError,
    ToolServerError,
)
from ..lifecycle import validate_transition
from ..models import Capability, ServerState
from ..tool_registry import ToolContext, ToolRegistry, ToolSpec
from .client import ToolServerChannel
from .config import ServerConfig

logger = logging.getLogger(__name__)

TOOL_NAME_SEPARATOR = "__"
_TOOL_NAME = re.compile(r"^[A-Za-z0-9_.-]+$")
_STREAM_LIMIT = 16 * 1024 * 1024
_STDERR_TAIL_LINES = 40


def qualified_tool_name(server: str, tool: str) -> str:
    return f"{server}{TOOL_NAME_SEPARATOR}{tool}"


@dataclass
class ServerStatus:
    name: str
    state: ServerState
    pid: int | None = None
    tools: list[str] = field(default_factory=list)
    diagnostic: str | None = None
    started_at: float | None = None


@dataclass
class ReloadReport:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    restarted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)


@dataclass
class _ServerHandle:
    config: ServerConfig
    state: ServerState = ServerState.STOPPED
    process: asyncio.subprocess.Process | None = None
    channel: ToolServerChannel | None = None
    tools: list[str] = field(default_factory=list)
    diagnostic: str | None = None
    started_at: float | None = None
    stopping: bool = False
    stderr_tail: collections.deque[str] = field(
        default_factory=lambda: collections.deque(maxlen=_STDERR_TAIL_LINES)
    )
    background: list[asyncio.Task[None]] = field(default_factory=list)


def parse_tool_listing(server: str, result: Any) -> list[dict[str, Any]]:
    """Validate a list_tools result. Raises ValueError when malformed."""
    tools = result.get("tools") if isinstance(result, dict) else result
    if not isinstance(tools, list):
        raise ValueError("list_tools result must be a list of tools")
    parsed = []
    seen: set[str] = set()
    for index, tool in enumerate(tools):
        if not isinstance(tool, dict):
            raise ValueError(f"tool #{index} is not an object")
        name = tool.get("name")
        if not isinstance(name, str) or not _TOOL_NAME.match(name):
            raise ValueError(f"tool #{index} has an invalid name: {name!r}")
        if name in seen:
            raise ValueError(f"tool '{name}' is listed twice")
        seen.add(name)
        schema = tool.get("parameters", tool.get("input_schema", tool.get("inputSchema")))
        if schema is None:
            schema = {"type": "object", "properties": {}}
        if not isinstance(schema, dict) or schema.get("type", "object") != "object":
            raise ValueError(f"tool '{name}' parameters must be an object schema")
        parsed.append({
            "name": name,
            "description": str(tool.get("description") or ""),
            "parameters": schema,
        })
    return parsed


class ToolServerSupervisor:
    """Registry of external tool servers keyed by name."""

    def __init__(
        self,
        registry: ToolRegistry,
        config: EngineConfig | None = None,
    ) -> None:
        self._registry = registry
        self._config = config or EngineConfig()
        self._servers: dict[str, _ServerHandle] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    # ── Configuration ──

    def add(self, server: ServerConfig) -> None:
        """Add a server definition (stopped). Replacing a live one is an error."""
        existing = self._servers.get(server.name)
        if existing is not None and existing.state in (ServerState.RUNNING, ServerState.STARTING):
            raise ValueError(f"Tool server '{server.name}' is {existing.state.value}; stop it first")
        self._servers[server.name] = _ServerHandle(config=server)
        self._locks.setdefault(server.name, asyncio.Lock())

    def names(self) -> list[str]:
        return sorted(self._servers)

    def configs(self) -> dict[str, ServerConfig]:
        return {name: h.config for name, h in self._servers.items()}

    def state(self, name: str) -> ServerState:
        return self._handle(name).state

    def status(self, name: str) -> ServerStatus:
        handle = self._handle(name)
        return ServerStatus(
            name=name,
            state=handle.state,
            pid=handle.process.pid if handle.process and handle.state == ServerState.RUNNING else None,
            tools=list(handle.tools),
            diagnostic=handle.diagnostic,
            started_at=handle.started_at,
        )

    def statuses(self) -> list[ServerStatus]:
        return [self.status(name) for name in self.names()]

    def running_servers(self) -> list[str]:
        return [n for n in self.names() if self._servers[n].state == ServerState.RUNNING]

    def _handle(self, name: str) -> _ServerHandle:
        handle = self._servers.get(name)
        if handle is None:
            raise ServerUnavailableError(name, "not configured")
        return handle

    async def _set_state(self, handle: _ServerHandle, target: ServerState) -> None:
        validate_transition(handle.state, target)
        previous = handle.state
        handle.state = target
        logger.info(
            "Tool server %s: %s -> %s", handle.config.name, previous.value, target.value
        )
        await fire_event(self._config.event_callback, {
            "event": "server_state",
            "server": handle.config.name,
            "state": target.value,
            "previous": previous.value,
            "diagnostic": handle.diagnostic,
        })

    # ── Lifecycle ──

    async def start(self, name: str) -> ServerStatus:
        """Spawn the server, run the handshake and register its tools.

        Failures leave the server FAILED with a diagnostic instead of
        raising; check the returned status.
        """
        handle = self._handle(name)
        async with self._locks[name]:
            if handle.state == ServerState.RUNNING:
                return self.status(name)
            handle.diagnostic = None
            handle.stopping = False
            handle.stderr_tail.clear()
            await self._set_state(handle, ServerState.STARTING)
            await self._start_locked(handle)
        return self.status(name)

    async def _start_locked(self, handle: _ServerHandle) -> None:
        cfg = handle.config
        startup_timeout = cfg.startup_timeout or self._config.server_startup_timeout_seconds
        request_timeout = cfg.request_timeout or self._config.server_request_timeout_seconds
        cwd = cfg.cwd or self._config.working_dir
        logger.info(
            "Starting tool server %s: %s %s (cwd=%s)",
            cfg.name, cfg.command, " ".join(cfg.args), cwd,
        )
        try:
            proc = await asyncio.create_subprocess_exec(
                cfg.command,
                *cfg.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **cfg.env_dict},
                cwd=cwd,
                start_new_session=True,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            await self._fail(handle, f"failed to spawn '{cfg.command}': {exc}")
            return

        handle.process = proc
        handle.channel = ToolServerChannel(cfg.name, proc.stdout, proc.stdin, request_timeout)
        handle.background = [
            asyncio.create_task(self._collect_stderr(handle, proc)),
        ]

        try:
            listing = await asyncio.wait_for(
                handle.channel.request("list_tools", {}, timeout=startup_timeout),
                startup_timeout,
            )
            tools = parse_tool_listing(cfg.name, listing)
            specs = [self._make_spec(cfg.name, tool) for tool in tools]
            self._registry.register_many(specs)
        except asyncio.TimeoutError:
            await self._teardown(handle)
            await self._fail(handle, f"handshake timed out after {startup_timeout}s")
            return
        except (ServerUnavailableError, ToolServerError, ToolNameCollisionError, ValueError) as exc:
            await self._teardown(handle)
            await self._fail(handle, f"handshake failed: {exc}")
            return

        handle.tools = [spec.name for spec in specs]
        handle.started_at = time.time()
        handle.background.append(asyncio.create_task(self._watch_exit(handle, proc)))
        await self._set_state(handle, ServerState.RUNNING)
        logger.info(
            "Tool server %s running pid=%s with %d tool(s)", cfg.name, proc.pid, len(specs)
        )

    async def _fail(self, handle: _ServerHandle, reason: str) -> None:
        tail = "\n".join(handle.stderr_tail).strip()
        handle.diagnostic = f"{reason}\nstderr:\n{tail}" if tail else reason
        logger.error("Tool server %s failed: %s", handle.config.name, reason)
        await self._set_state(handle, ServerState.FAILED)

    async def stop(self, name: str) -> ServerStatus:
        """Close the server's stdin, then SIGTERM, then SIGKILL."""
        handle = self._handle(name)
        async with self._locks[name]:
            if handle.state == ServerState.STOPPED:
                return self.status(name)
            handle.stopping = True
            removed = self._registry.unregister_server(name)
            handle.tools = []
            logger.info("Stopping tool server %s (%d tools unregistered)", name, len(removed))
            await self._teardown(handle)
            handle.diagnostic = None
            await self._set_state(handle, ServerState.STOPPED)
        return self.status(name)

    async def restart(self, name: str) -> ServerStatus:
        await self.stop(name)
        return await self.start(name)

    async def start_all(self) -> list[ServerStatus]:
        names = [n for n, h in self._servers.items() if h.config.enabled]
        return list(await asyncio.gather(*(self.start(n) for n in names)))

    async def shutdown(self) -> None:
        """Stop every server and wait until all processes are gone."""
        names = [n for n, h in self._servers.items() if h.state != ServerState.STOPPED]
        if names:
            logger.info("Shutting down %d tool server(s)", len(names))
        await asyncio.gather(*(self.stop(n) for n in names))

    async def apply_config(self, configs: dict[str, ServerConfig]) -> ReloadReport:
        """Hot reload: touch only servers whose definition changed."""
        report = ReloadReport()
        current = self.configs()
        for name in current:
            if name not in configs:
                report.removed.append(name)
            elif current[name] != configs[name]:
                report.restarted.append(name)
            else:
                report.unchanged.append(name)
        report.added = [n for n in configs if n not in current]
        logger.info(
            "Applying tool server config: added=%s removed=%s restarted=%s unchanged=%d",
            report.added, report.removed, report.restarted, len(report.unchanged),
        )

        await asyncio.gather(*(self.stop(n) for n in report.removed + report.restarted))
        for name in report.removed:
            del self._servers[name]
            self._locks.pop(name, None)
        for name in report.restarted + report.added:
            self.add(configs[name])
        to_start = [n for n in report.restarted + report.added if configs[n].enabled]
        await asyncio.gather(*(self.start(n) for n in to_start))
        return report

    # ── Calls ──

    async def call_tool(self, server: str, tool: str, arguments: dict[str, Any]) -> Any:
        handle = self._servers.get(server)
        if handle is None:
            raise ServerUnavailableError(server, "not configured")
        if handle.state != ServerState.RUNNING or handle.channel is None:
            raise ServerUnavailableError(server, handle.state.value)
        result = await handle.channel.request(
            "call_tool", {"name": tool, "arguments": arguments}
        )
        if isinstance(result, dict) and result.get("is_error"):
            raise ToolServerError(server, f"call_tool {tool}", _result_text(result))
        return result

    async def list_tools(self, server: str) -> list[dict[str, Any]]:
        """Ask a running server for its current tool listing."""
        handle = self._servers.get(server)
        if handle is None or handle.state != ServerState.RUNNING or handle.channel is None:
            raise ServerUnavailableError(server)
        return parse_tool_listing(server, await handle.channel.request("list_tools", {}))

    def _make_spec(self, server: str, tool: dict[str, Any]) -> ToolSpec:
        tool_name = tool["name"]

        async def _handler(args: dict[str, Any], ctx: ToolContext) -> Any:
            return await self.call_tool(server, tool_name, args)

        return ToolSpec(
            name=qualified_tool_name(server, tool_name),
            description=tool["description"] or f"{tool_name} (from {server})",
            handler=_handler,
            parameters=tool["parameters"],
            capability=Capability.MCP,
            source="mcp",
            server=server,
        )

    # ── Process plumbing ──

    async def _collect_stderr(
        self, handle: _ServerHandle, proc: asyncio.subprocess.Process
    ) -> None:
        if proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode("utf-8", errors="replace").rstrip()
            handle.stderr_tail.append(text)
            logger.debug("[%s stderr] %s", handle.config.name, text)

    async def _watch_exit(
        self, handle: _ServerHandle, proc: asyncio.subprocess.Process
    ) -> None:
        code = await proc.wait()
        if handle.process is not proc or handle.stopping or handle.state != ServerState.RUNNING:
            return
        logger.warning("Tool server %s exited unexpectedly with code %s", handle.config.name, code)
        self._registry.unregister_server(handle.config.name)
        handle.tools = []
        if handle.channel is not None:
            handle.channel.close()
        await self._fail(handle, f"process exited with code {code}")

    async def _teardown(self, handle: _ServerHandle) -> None:
        proc = handle.process
        if handle.channel is not None:
            handle.channel.close()
        grace = self._config.server_stop_grace_seconds
        if proc is not None and proc.returncode is None:
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except asyncio.TimeoutError:
                for sig in (signal.SIGTERM, signal.SIGKILL):
                    try:
                        os.killpg(proc.pid, sig)
                    except (ProcessLookupError, PermissionError):
                        if proc.returncode is None:
                            try:
                                proc.send_signal(sig)
                            except ProcessLookupError:
                                pass
                    try:
                        await asyncio.wait_for(proc.wait(), grace)
                        break
                    except asyncio.TimeoutError:
                        logger.warning(
                            "Tool server %s pid=%s ignored %s",
                            handle.config.name, proc.pid, sig.name,
                        )
                else:
                    await proc.wait()
        if handle.background:
            # Let the stderr reader pick up the last lines for the diagnostic.
            _, pending = await asyncio.wait(handle.background, timeout=0.5)
            for task in pending:
                task.cancel()
            await asyncio.gather(*handle.background, return_exceptions=True)
        handle.background = []
        handle.process = None
        handle.channel = None


def _result_text(result: dict[str, Any]) -> str:
    content = result.get("content")
    if isinstance(content, list):
        texts = [c.get("text", "") for c in content if isinstance(c, dict)]
        return "\n".join(t for t in texts if t) or "tool reported an error"
    return str(result.get("message") or result.get("text") or "tool reported an error")

from __future__ import annotations

import asyncio
import logging
import os
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from stockpot.engine.config import EngineConfig
from stockpot.engine.errors import ErrorKind, ServerUnavailableError, ToolServerError
from stockpot.engine.mcp.config import ServerConfig
from stockpot.engine.mcp.supervisor import ToolServerSupervisor, parse_tool_listing
from stockpot.engine.models import (
    AgentDefinition,
    CapabilitySet,
    ServerState,
    ToolCallRequest,
)
from stockpot.engine.tool_registry import ToolContext, ToolRegistry, ToolSpec
from stockpot.engine.tools.paths import WorkTree

ECHO_SERVER = str(Path(__file__).parent / "fixtures" / "echo_server.py")


def _server(name: str = "echo", mode: str = "ok", **kwargs) -> ServerConfig:
    return ServerConfig(
        name=name, command=sys.executable, args=(ECHO_SERVER, mode), **kwargs
    )


def _config(tmp_path, **kwargs) -> EngineConfig:
    kwargs.setdefault("server_startup_timeout_seconds", 10)
    kwargs.setdefault("server_request_timeout_seconds", 10)
    kwargs.setdefault("server_stop_grace_seconds", 0.5)
    return EngineConfig(working_dir=str(tmp_path), **kwargs)


def _ctx(tmp_path, capabilities: CapabilitySet) -> ToolContext:
    return ToolContext(
        agent=AgentDefinition(name="tester", system_prompt="x", capabilities=capabilities),
        call_id="c1",
        work_tree=WorkTree(tmp_path),
        config=EngineConfig(working_dir=str(tmp_path)),
    )


async def _wait_for_state(supervisor, name, state, timeout=5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while supervisor.state(name) != state:
        if loop.time() > deadline:
            raise AssertionError(f"{name} stayed {supervisor.state(name)}")
        await asyncio.sleep(0.05)


@pytest.mark.asyncio
async def test_start_registers_qualified_tools_and_stop_removes_them(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server())
    try:
        status = await supervisor.start("echo")
        assert status.state == ServerState.RUNNING
        assert status.pid is not None
        assert sorted(status.tools) == ["echo__echo", "echo__fail"]
        assert "echo__echo" in registry

        result = await registry.dispatch(
            ToolCallRequest("c1", "echo__echo", {"text": "ping"}),
            _ctx(tmp_path, CapabilitySet(mcp=True)),
        )
        assert not result.is_error
        assert result.payload["content"][0]["text"] == "ping"
    finally:
        await supervisor.stop("echo")

    assert supervisor.state("echo") == ServerState.STOPPED
    assert "echo__echo" not in registry


@pytest.mark.asyncio
async def test_server_tools_need_mcp_capability(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server())
    try:
        await supervisor.start("echo")
        result = await registry.dispatch(
            ToolCallRequest("c1", "echo__echo", {"text": "ping"}),
            _ctx(tmp_path, CapabilitySet.read_only()),
        )
        assert result.error_kind == ErrorKind.CAPABILITY_DENIED
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_agent_sees_only_attached_servers(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server("alpha"))
    supervisor.add(_server("beta"))
    agent = AgentDefinition(
        name="attached", system_prompt="x",
        capabilities=CapabilitySet(mcp=True), mcp_servers=("alpha",),
    )
    ctx = ToolContext(
        agent=agent, call_id="c1", work_tree=WorkTree(tmp_path),
        config=EngineConfig(working_dir=str(tmp_path)),
    )
    try:
        await supervisor.start_all()
        assert [s.name for s in registry.specs_for(agent)] == ["alpha__echo", "alpha__fail"]

        ok = await registry.dispatch(ToolCallRequest("c1", "alpha__echo", {"text": "hi"}), ctx)
        assert not ok.is_error
        denied = await registry.dispatch(ToolCallRequest("c2", "beta__echo", {"text": "hi"}), ctx)
        assert denied.error_kind == ErrorKind.CAPABILITY_DENIED
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_tool_reported_error_becomes_error_result(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server())
    try:
        await supervisor.start("echo")
        with pytest.raises(ToolServerError, match="boom"):
            await supervisor.call_tool("echo", "fail", {})
        result = await registry.dispatch(
            ToolCallRequest("c1", "echo__fail", {}), _ctx(tmp_path, CapabilitySet(mcp=True))
        )
        assert result.error_kind == ErrorKind.TOOL_INVOCATION_ERROR
        assert "boom" in result.text()
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_noisy_server_still_answers(tmp_path) -> None:
    supervisor = ToolServerSupervisor(ToolRegistry(), _config(tmp_path))
    supervisor.add(_server(mode="noisy"))
    try:
        status = await supervisor.start("echo")
        assert status.state == ServerState.RUNNING
        result = await supervisor.call_tool("echo", "echo", {"text": "hi"})
        assert result["content"][0]["text"] == "hi"
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_malformed_handshake_fails_with_diagnostic(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server(mode="bad-handshake"))

    status = await supervisor.start("echo")

    assert status.state == ServerState.FAILED
    assert "invalid name" in status.diagnostic
    assert len(registry) == 0
    await supervisor.shutdown()
    assert supervisor.state("echo") == ServerState.STOPPED


@pytest.mark.asyncio
async def test_handshake_timeout(tmp_path) -> None:
    supervisor = ToolServerSupervisor(
        ToolRegistry(), _config(tmp_path, server_startup_timeout_seconds=0.5)
    )
    supervisor.add(_server(mode="hang"))

    status = await supervisor.start("echo")

    assert status.state == ServerState.FAILED
    assert status.diagnostic


@pytest.mark.asyncio
async def test_stop_escalates_to_sigkill(tmp_path, caplog) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path, server_stop_grace_seconds=0.3))
    supervisor.add(_server(mode="stubborn"))
    await supervisor.start("echo")
    pid = supervisor.status("echo").pid
    assert pid is not None

    with caplog.at_level(logging.WARNING, logger="stockpot.engine.mcp.supervisor"):
        status = await supervisor.stop("echo")

    assert status.state == ServerState.STOPPED
    assert "ignored SIGTERM" in caplog.text
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)
    assert "echo__echo" not in registry


@pytest.mark.asyncio
async def test_early_exit_keeps_stderr_tail(tmp_path) -> None:
    supervisor = ToolServerSupervisor(ToolRegistry(), _config(tmp_path))
    supervisor.add(_server(mode="die-early"))

    status = await supervisor.start("echo")

    assert status.state == ServerState.FAILED
    assert "missing credentials" in status.diagnostic


@pytest.mark.asyncio
async def test_missing_executable_fails(tmp_path) -> None:
    supervisor = ToolServerSupervisor(ToolRegistry(), _config(tmp_path))
    supervisor.add(ServerConfig(name="ghost", command=str(tmp_path / "no-such-binary")))

    status = await supervisor.start("ghost")

    assert status.state == ServerState.FAILED
    assert "failed to spawn" in status.diagnostic


@pytest.mark.asyncio
async def test_crash_unregisters_tools_and_marks_failed(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server(mode="crash"))
    try:
        await supervisor.start("echo")
        with pytest.raises(ServerUnavailableError):
            await supervisor.call_tool("echo", "echo", {"text": "x"})
        await _wait_for_state(supervisor, "echo", ServerState.FAILED)
        assert "exited with code 3" in supervisor.status("echo").diagnostic
        assert "echo__echo" not in registry
        with pytest.raises(ServerUnavailableError):
            await supervisor.call_tool("echo", "echo", {"text": "x"})
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_name_collision_fails_the_server(tmp_path) -> None:
    async def _noop(args, ctx):
        return None

    registry = ToolRegistry()
    registry.register(ToolSpec(name="echo__echo", description="taken", handler=_noop))
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    supervisor.add(_server())

    status = await supervisor.start("echo")

    assert status.state == ServerState.FAILED
    assert "collides" in status.diagnostic
    assert "echo__fail" not in registry
    assert registry.get("echo__echo").description == "taken"


@pytest.mark.asyncio
async def test_restart_after_failure(tmp_path) -> None:
    supervisor = ToolServerSupervisor(ToolRegistry(), _config(tmp_path))
    supervisor.add(_server(mode="die-early"))
    assert (await supervisor.start("echo")).state == ServerState.FAILED

    supervisor.add(_server())
    try:
        status = await supervisor.start("echo")
        assert status.state == ServerState.RUNNING
        assert status.diagnostic is None
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_apply_config_only_touches_changed_servers(tmp_path) -> None:
    registry = ToolRegistry()
    supervisor = ToolServerSupervisor(registry, _config(tmp_path))
    keep = _server("keep")
    change = _server("change")
    drop = _server("drop")
    for cfg in (keep, change, drop):
        supervisor.add(cfg)
    try:
        await supervisor.start_all()
        keep_pid = supervisor.status("keep").pid
        change_pid = supervisor.status("change").pid

        changed = _server("change", env=(("EXTRA", "1"),))
        report = await supervisor.apply_config({
            "keep": keep,
            "change": changed,
            "new": _server("new"),
        })

        assert report.unchanged == ["keep"]
        assert report.restarted == ["change"]
        assert report.removed == ["drop"]
        assert report.added == ["new"]
        assert supervisor.status("keep").pid == keep_pid
        assert supervisor.status("change").pid != change_pid
        assert supervisor.names() == ["change", "keep", "new"]
        assert "drop__echo" not in registry
        assert "new__echo" in registry
    finally:
        await supervisor.shutdown()


@pytest.mark.asyncio
async def test_state_events_are_emitted(tmp_path) -> None:
    events = []

    async def _callback(event):
        events.append(event)

    supervisor = ToolServerSupervisor(
        ToolRegistry(), _config(tmp_path, event_callback=_callback)
    )
    supervisor.add(_server())
    await supervisor.start("echo")
    await supervisor.stop("echo")

    states = [e["state"] for e in events if e["event"] == "server_state"]
    assert states == ["starting", "running", "stopped"]


def test_parse_tool_listing_validation() -> None:
    tools = parse_tool_listing("s", {"tools": [
        {"name": "a", "inputSchema": {"type": "object", "properties": {"q": {"type": "string"}}}},
        {"name": "b"},
    ]})
    assert tools[0]["parameters"]["properties"] == {"q": {"type": "string"}}
    assert tools[1]["parameters"] == {"type": "object", "properties": {}}

    with pytest.raises(ValueError, match="listed twice"):
        parse_tool_listing("s", [{"name": "a"}, {"name": "a"}])
    with pytest.raises(ValueError, match="object schema"):
        parse_tool_listing("s", [{"name": "a", "parameters": {"type": "string"}}])
    with pytest.raises(ValueError):
        parse_tool_listing("s", "nope")


@pytest.mark.asyncio
async def test_stderr_collector_tolerates_missing_pipe(tmp_path) -> None:
    supervisor = ToolServerSupervisor(ToolRegistry(), _config(tmp_path))
    handle = MagicMock(stderr_tail=[])
    await supervisor._collect_stderr(handle, MagicMock(stderr=None))
    assert handle.stderr_tail == []

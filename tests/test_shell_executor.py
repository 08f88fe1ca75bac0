from __future__ import annotations

import asyncio
import time

import pytest

from stockpot.engine.config import EngineConfig
from stockpot.engine.errors import ErrorKind, ToolInvocationError
from stockpot.engine.models import AgentDefinition, CapabilitySet, ToolStatus
from stockpot.engine.tool_registry import ToolContext
from stockpot.engine.tools.shell import ShellExecutor, run_shell_command
from stockpot.engine.tools.paths import WorkTree


def _executor(**kwargs) -> ShellExecutor:
    kwargs.setdefault("default_timeout", 10.0)
    kwargs.setdefault("kill_grace_seconds", 0.2)
    return ShellExecutor(**kwargs)


@pytest.mark.asyncio
async def test_captures_stdout_stderr_and_exit_code(tmp_path) -> None:
    result = await _executor().execute("echo out; echo err 1>&2; exit 3", tmp_path)
    assert result.stdout == "out\n"
    assert result.stderr == "err\n"
    assert result.exit_code == 3
    assert not result.success
    assert not result.timed_out


@pytest.mark.asyncio
async def test_runs_in_working_dir(tmp_path) -> None:
    result = await _executor().execute("pwd", tmp_path)
    assert result.stdout.strip() == str(tmp_path.resolve())


@pytest.mark.asyncio
async def test_streams_output_chunks() -> None:
    chunks: list[tuple[str, str]] = []

    async def _on_output(chunk: str, stream: str) -> None:
        chunks.append((stream, chunk))

    result = await _executor().execute(
        "echo first; echo second 1>&2", on_output=_on_output
    )
    assert result.success
    assert "".join(c for s, c in chunks if s == "stdout") == "first\n"
    assert "".join(c for s, c in chunks if s == "stderr") == "second\n"


@pytest.mark.asyncio
async def test_timeout_kills_process_group_and_keeps_partial_output() -> None:
    started = time.monotonic()
    result = await _executor().execute(
        "echo before; sleep 30 & sleep 30; echo after", timeout=0.5
    )
    assert result.timed_out
    assert result.stdout == "before\n"
    assert time.monotonic() - started < 10


@pytest.mark.asyncio
async def test_cancel_event_stops_command() -> None:
    cancel = asyncio.Event()

    async def _cancel_soon() -> None:
        await asyncio.sleep(0.3)
        cancel.set()

    canceller = asyncio.create_task(_cancel_soon())
    result = await _executor().execute("sleep 30", cancel_event=cancel)
    await canceller
    assert result.cancelled
    assert not result.timed_out
    assert result.exit_code != 0


@pytest.mark.asyncio
async def test_output_is_truncated() -> None:
    result = await _executor(max_output_chars=100).execute(
        "for i in $(seq 1 200); do echo line$i; done"
    )
    assert result.truncated
    assert "[truncated" in result.stdout


@pytest.mark.asyncio
async def test_empty_command_rejected() -> None:
    with pytest.raises(ToolInvocationError):
        await _executor().execute("   ")


def _ctx(tmp_path, cancel_event=None) -> ToolContext:
    return ToolContext(
        agent=AgentDefinition(
            name="tester", system_prompt="test", capabilities=CapabilitySet.full()
        ),
        call_id="call_sh",
        work_tree=WorkTree(tmp_path),
        config=EngineConfig(
            working_dir=str(tmp_path),
            shell_timeout_seconds=10,
            shell_kill_grace_seconds=0.2,
        ),
        cancel_event=cancel_event,
    )


class TestRunShellCommandTool:
    @pytest.mark.asyncio
    async def test_success(self, tmp_path) -> None:
        result = await run_shell_command({"command": "echo hi"}, _ctx(tmp_path))
        assert result.status == ToolStatus.OK
        assert result.error_kind is None
        assert result.payload["stdout"] == "hi\n"

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_ok_but_tagged(self, tmp_path) -> None:
        result = await run_shell_command({"command": "exit 2"}, _ctx(tmp_path))
        assert result.status == ToolStatus.OK
        assert result.error_kind == ErrorKind.SHELL_NON_ZERO_EXIT
        assert result.payload["exit_code"] == 2

    @pytest.mark.asyncio
    async def test_timeout_is_error(self, tmp_path) -> None:
        result = await run_shell_command(
            {"command": "sleep 30", "timeout_seconds": 0.3}, _ctx(tmp_path)
        )
        assert result.status == ToolStatus.ERROR
        assert result.error_kind == ErrorKind.SHELL_TIMEOUT
        assert result.payload["timed_out"] is True
        assert "timed out after 0.3s" in result.payload["error"]

    @pytest.mark.asyncio
    async def test_cancelled_is_error(self, tmp_path) -> None:
        cancel = asyncio.Event()
        cancel.set()
        result = await run_shell_command({"command": "sleep 30"}, _ctx(tmp_path, cancel))
        assert result.error_kind == ErrorKind.CANCELLED

    @pytest.mark.asyncio
    async def test_working_directory_must_stay_inside_root(self, tmp_path) -> None:
        with pytest.raises(ToolInvocationError):
            await run_shell_command(
                {"command": "ls", "working_directory": ".."}, _ctx(tmp_path)
            )

    @pytest.mark.asyncio
    async def test_emits_deltas(self, tmp_path) -> None:
        events = []

        async def _callback(event):
            events.append(event)

        ctx = _ctx(tmp_path)
        ctx.event_callback = _callback
        await run_shell_command({"command": "echo streamed"}, ctx)
        deltas = [e for e in events if e["event"] == "tool_call_delta"]
        assert "".join(e["delta"] for e in deltas) == "streamed\n"
        assert all(e["call_id"] == "call_sh" for e in deltas)

"""CLI entry point for the execution core.

Usage:
    stockpot run --script turns.yaml "Rename the config loader"
    stockpot run --agent explore --script turns.yaml --jsonl "Where is X parsed?"
    stockpot agents --config stockpot.yaml
    stockpot servers --config stockpot.yaml

Model providers plug in through the library API; from the command line
a run replays model turns from a script file (``--script``), which is
how tool and server setups are exercised without a model.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

import yaml
from rich.console import Console
from rich.table import Table

from stockpot.adapters.event_bus import EventBus, JsonlEventWriter, fan_out
from stockpot.adapters.events import (
    EngineEvent,
    Reasoning,
    RunComplete,
    RunError,
    ServerStateChanged,
    TextDelta,
    ToolCallDelta,
    ToolCallEnd,
    ToolCallStart,
)

from .config import EngineConfig
from .errors import AgentNotFoundError
from .model_client import ScriptedModelClient
from .mcp.config import load_server_configs
from .runtime import Runtime
from .yaml_config import StockpotConfig, load_yaml_config

console = Console(stderr=False, highlight=False)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stockpot",
        description="Agent execution core: tool-calling loop, tools and tool servers",
    )
    parser.add_argument("--config", "-c", default=None, help="YAML config file")
    parser.add_argument(
        "--servers-file", default=None,
        help="JSON/YAML tool server config (adds to the config file's mcp_servers)",
    )
    parser.add_argument("--cwd", default=None, help="Project root (default: from config)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run an agent on a prompt")
    run.add_argument("prompt", help="User prompt")
    run.add_argument("--agent", "-a", default=None, help="Agent name (default: from config)")
    run.add_argument("--script", "-s", required=True, help="Model turns to replay (.yaml/.json)")
    run.add_argument("--max-iterations", type=int, default=None)
    run.add_argument("--jsonl", action="store_true", help="Write events to stdout as JSON lines")

    sub.add_parser("agents", help="List agent definitions")
    sub.add_parser("servers", help="Start tool servers, show their state and tools, stop them")
    return parser


def _load_settings(args: argparse.Namespace) -> StockpotConfig:
    if args.config:
        settings = load_yaml_config(args.config)
    else:
        settings = StockpotConfig(engine=EngineConfig.from_env())
    if args.servers_file:
        settings.servers.update(load_server_configs(args.servers_file))
    if args.cwd is not None:
        settings.engine.working_dir = str(Path(args.cwd).resolve())
    return settings


def _configure_logging(verbose: bool, level_name: str) -> None:
    level = getattr(logging, level_name.upper(), None)
    if verbose:
        level = logging.DEBUG
    elif not isinstance(level, int):
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
        stream=sys.stderr,
    )


def main(argv: list[str] | None = None) -> None:
    args = _build_parser().parse_args(argv)

    try:
        settings = _load_settings(args)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        _configure_logging(args.verbose, "WARNING")
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(2)
    _configure_logging(args.verbose, settings.engine.log_level)

    if args.command == "agents":
        _print_agents(Runtime(settings))
        return
    if args.command == "servers":
        sys.exit(asyncio.run(_servers(settings)))
    try:
        code = asyncio.run(_run(settings, args))
    except AgentNotFoundError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        sys.exit(2)
    sys.exit(code)


def _print_agents(runtime: Runtime) -> None:
    table = Table(title="Agents")
    table.add_column("Name")
    table.add_column("Capabilities")
    table.add_column("Model")
    table.add_column("Description")
    for agent in runtime.agents.list_agents():
        table.add_row(
            agent.name,
            ", ".join(agent.capabilities.granted()) or "-",
            agent.model or "-",
            agent.description,
        )
    console.print(table)


async def _servers(settings: StockpotConfig) -> int:
    runtime = Runtime(settings)
    try:
        statuses = await runtime.start_servers()
        if not statuses:
            console.print("No tool servers configured.")
            return 0
        for status in statuses:
            colour = "green" if status.state.value == "running" else "red"
            console.print(f"[bold]{status.name}[/bold] [{colour}]{status.state.value}[/{colour}]")
            for tool in status.tools:
                console.print(f"  {tool}")
            if status.diagnostic:
                console.print(f"  [dim]{status.diagnostic}[/dim]")
        return 0 if all(s.diagnostic is None for s in statuses) else 1
    finally:
        await runtime.shutdown()


async def _run(settings: StockpotConfig, args: argparse.Namespace) -> int:
    if args.max_iterations is not None:
        settings.engine.max_iterations = args.max_iterations

    bus = EventBus()
    writer = JsonlEventWriter(sys.stdout) if args.jsonl else None
    settings.engine.event_callback = fan_out(
        None if args.jsonl else bus.make_callback(),
        writer.make_callback() if writer else None,
    )
    runtime = Runtime(settings)
    client = ScriptedModelClient.from_file(args.script)

    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    except (NotImplementedError, RuntimeError):
        pass

    printer = None if args.jsonl else asyncio.create_task(_print_events(bus))
    try:
        await runtime.start_servers()
        outcome = await runtime.run(
            args.agent, args.prompt, model_client=client, cancel_event=cancel_event
        )
    finally:
        await runtime.shutdown()
        bus.close()
        if printer is not None:
            await printer
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except (NotImplementedError, RuntimeError):
            pass
    return 0 if outcome.succeeded else 1


async def _print_events(bus: EventBus) -> None:
    async for event in bus.consume():
        _print_event(event)


def _print_event(event: EngineEvent) -> None:
    indent = "  " * event.depth
    if isinstance(event, TextDelta):
        console.print(event.text, end="", markup=False)
    elif isinstance(event, ToolCallStart):
        console.print(f"\n{indent}[cyan]→ {event.tool_name}[/cyan] [dim]{event.call_id}[/dim]")
    elif isinstance(event, ToolCallDelta):
        style = "red" if event.stream == "stderr" else "dim"
        console.print(event.delta, end="", style=style, markup=False)
    elif isinstance(event, ToolCallEnd):
        colour = "green" if event.status == "ok" and not event.error_kind else "yellow"
        suffix = f" ({event.error_kind})" if event.error_kind else ""
        console.print(f"{indent}[{colour}]← {event.tool_name} {event.status}{suffix}[/{colour}]")
    elif isinstance(event, Reasoning):
        console.print(f"{indent}[magenta]reasoning:[/magenta] {event.reasoning}")
    elif isinstance(event, ServerStateChanged):
        console.print(f"[dim]server {event.server}: {event.state}[/dim]")
    elif isinstance(event, RunError):
        console.print(f"\n{indent}[red]{event.kind}:[/red] {event.message}")
    elif isinstance(event, RunComplete) and event.depth == 0:
        console.print(f"\n[bold]{event.state}[/bold] after {event.iterations} iteration(s)")


if __name__ == "__main__":
    main()

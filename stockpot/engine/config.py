"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via STOCKPOT_* env vars
or the ``engine:`` section of a YAML config (see yaml_config.py).
"""
from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


# Optional async callback for real-time event observation.
# Signature: async def callback(event: dict[str, Any]) -> None
EventCallback = Callable[[dict[str, Any]], Awaitable[None]]


async def fire_event(
    callback: EventCallback | None,
    event: dict[str, Any],
) -> None:
    """Fire an event callback if set, silently swallowing errors."""
    if callback is None:
        return
    try:
        await callback(event)
    except Exception:
        logger.debug("Event callback failed for %s", event.get("event"), exc_info=True)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.lower() in {"1", "true", "yes"}


@dataclass
class EngineConfig:
    """Agent execution core configuration."""

    # Root of the working tree. File tools refuse paths outside it.
    working_dir: str = "."
    default_agent: str = "stockpot"

    # Model round trips per run before giving up.
    max_iterations: int = 50
    # Sub-agent nesting limit; the top-level agent runs at depth 0.
    max_nesting_depth: int = 3
    # Tool calls of one turn dispatched at once. 1 means sequential.
    max_parallel_tools: int = 4

    # Shell executor
    shell_timeout_seconds: float = 120.0
    shell_max_output_chars: int = 40000
    # Wait between escalating signals when stopping a process group.
    shell_kill_grace_seconds: float = 1.0

    # External tool servers
    server_startup_timeout_seconds: float = 30.0
    server_request_timeout_seconds: float = 120.0
    server_stop_grace_seconds: float = 3.0

    # Lines a unified-diff hunk may drift from its stated position.
    diff_fuzz_lines: int = 3

    # Logging
    log_level: str = "INFO"

    # Receives dicts like {"event": "text_delta", "run_id": "...", ...}
    event_callback: EventCallback | None = field(default=None, repr=False)

    @classmethod
    def from_env(cls) -> EngineConfig:
        """Load configuration from STOCKPOT_* environment variables."""
        env_vars = {
            k: v for k, v in os.environ.items() if k.startswith("STOCKPOT_")
        }
        if env_vars:
            logger.info(
                "EngineConfig.from_env: STOCKPOT_* env overrides: %s",
                ", ".join(f"{k}={v}" for k, v in sorted(env_vars.items())),
            )
        else:
            logger.debug("EngineConfig.from_env: no STOCKPOT_* env vars set, using defaults")

        config = cls(
            working_dir=os.getenv("STOCKPOT_WORKING_DIR", cls.working_dir),
            default_agent=os.getenv("STOCKPOT_DEFAULT_AGENT", cls.default_agent),
            max_iterations=int(os.getenv(
                "STOCKPOT_MAX_ITERATIONS", str(cls.max_iterations)
            )),
            max_nesting_depth=int(os.getenv(
                "STOCKPOT_MAX_NESTING_DEPTH", str(cls.max_nesting_depth)
            )),
            max_parallel_tools=int(os.getenv(
                "STOCKPOT_MAX_PARALLEL_TOOLS", str(cls.max_parallel_tools)
            )),
            shell_timeout_seconds=float(os.getenv(
                "STOCKPOT_SHELL_TIMEOUT", str(cls.shell_timeout_seconds)
            )),
            shell_max_output_chars=int(os.getenv(
                "STOCKPOT_SHELL_MAX_OUTPUT", str(cls.shell_max_output_chars)
            )),
            shell_kill_grace_seconds=float(os.getenv(
                "STOCKPOT_SHELL_KILL_GRACE", str(cls.shell_kill_grace_seconds)
            )),
            server_startup_timeout_seconds=float(os.getenv(
                "STOCKPOT_SERVER_STARTUP_TIMEOUT",
                str(cls.server_startup_timeout_seconds),
            )),
            server_request_timeout_seconds=float(os.getenv(
                "STOCKPOT_SERVER_REQUEST_TIMEOUT",
                str(cls.server_request_timeout_seconds),
            )),
            server_stop_grace_seconds=float(os.getenv(
                "STOCKPOT_SERVER_STOP_GRACE",
                str(cls.server_stop_grace_seconds),
            )),
            diff_fuzz_lines=int(os.getenv(
                "STOCKPOT_DIFF_FUZZ", str(cls.diff_fuzz_lines)
            )),
            log_level=os.getenv("STOCKPOT_LOG_LEVEL", cls.log_level),
        )
        if _env_bool("STOCKPOT_SEQUENTIAL_TOOLS", False):
            config.max_parallel_tools = 1
        logger.info(
            "EngineConfig.from_env: cwd=%s max_iterations=%d max_depth=%d log_level=%s",
            config.working_dir, config.max_iterations,
            config.max_nesting_depth, config.log_level,
        )
        return config

    def merged(self, overrides: dict[str, Any]) -> EngineConfig:
        """Return a copy with known keys from ``overrides`` applied."""
        known = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        unknown = sorted(set(overrides) - set(known))
        if unknown:
            logger.warning("Ignoring unknown engine config keys: %s", ", ".join(unknown))
        values = {name: getattr(self, name) for name in self.__dataclass_fields__}
        values.update(known)
        return EngineConfig(**values)

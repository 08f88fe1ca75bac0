"""External tool server configuration.

Servers are local subprocesses speaking line-delimited JSON on
stdin/stdout. Configuration comes from a JSON or YAML file, or the
``mcp_servers:`` section of the main YAML config.

Config format:
{
    "servers": {
        "search": {
            "command": "python",
            "args": ["-m", "search_server", "--index", "${HOME}/.index"],
            "env": {"API_KEY": "${SEARCH_API_KEY}"},
            "description": "Code search",
            "enabled": true
        }
    }
}

``mcpServers`` is accepted as the top-level key too. ``${VAR}`` in
args and env values is replaced from the environment (unset: empty).
"""
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

_ENV_REF = re.compile(r"\$\{([^}]*)\}")


def expand_env_vars(value: str, environ: dict[str, str] | None = None) -> str:
    environ = os.environ if environ is None else environ
    return _ENV_REF.sub(lambda m: environ.get(m.group(1), "") if m.group(1) else "", value)


@dataclass(frozen=True)
class ServerConfig:
    """One external tool server. Equality decides hot-reload restarts."""
    name: str
    command: str
    args: tuple[str, ...] = ()
    env: tuple[tuple[str, str], ...] = ()
    cwd: str | None = None
    description: str = ""
    enabled: bool = True
    # None: use the EngineConfig server timeouts
    startup_timeout: float | None = None
    request_timeout: float | None = None

    @property
    def env_dict(self) -> dict[str, str]:
        return dict(self.env)

    def expanded(self, environ: dict[str, str] | None = None) -> ServerConfig:
        return ServerConfig(
            name=self.name,
            command=expand_env_vars(self.command, environ),
            args=tuple(expand_env_vars(a, environ) for a in self.args),
            env=tuple((k, expand_env_vars(v, environ)) for k, v in self.env),
            cwd=expand_env_vars(self.cwd, environ) if self.cwd else None,
            description=self.description,
            enabled=self.enabled,
            startup_timeout=self.startup_timeout,
            request_timeout=self.request_timeout,
        )


def _parse_server(name: str, cfg: Any) -> ServerConfig | None:
    if not isinstance(cfg, dict):
        logger.warning("Tool server %s: entry must be a mapping, skipping", name)
        return None
    command = cfg.get("command")
    if not command:
        logger.warning("Tool server %s: missing 'command', skipping", name)
        return None
    if cfg.get("type", "stdio") != "stdio" or cfg.get("url"):
        logger.warning("Tool server %s: only stdio servers are supported, skipping", name)
        return None
    env = cfg.get("env") or {}
    return ServerConfig(
        name=name,
        command=str(command),
        args=tuple(str(a) for a in cfg.get("args") or ()),
        env=tuple(sorted((str(k), str(v)) for k, v in env.items())),
        cwd=cfg.get("cwd") or None,
        description=str(cfg.get("description") or ""),
        enabled=bool(cfg.get("enabled", True)),
        startup_timeout=cfg.get("startup_timeout"),
        request_timeout=cfg.get("request_timeout"),
    )


def parse_server_configs(
    data: dict[str, Any] | None,
    *,
    include_disabled: bool = False,
    environ: dict[str, str] | None = None,
) -> dict[str, ServerConfig]:
    """Parse a mapping with a ``servers``/``mcpServers`` key, or the bare map."""
    if not data:
        return {}
    servers = data.get("servers", data.get("mcpServers", data))
    if not isinstance(servers, dict):
        raise ValueError("tool server config must map names to server entries")
    configs: dict[str, ServerConfig] = {}
    for name, cfg in servers.items():
        server = _parse_server(str(name), cfg)
        if server is None:
            continue
        if not server.enabled and not include_disabled:
            logger.debug("Tool server %s is disabled", name)
            continue
        configs[server.name] = server.expanded(environ)
    return configs


def load_server_configs(path: str | Path, **kwargs: Any) -> dict[str, ServerConfig]:
    """Load server configs from a .json or .yaml file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except FileNotFoundError:
        logger.info("No tool server config at %s", path)
        return {}
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        logger.error("Failed to parse tool server config %s: %s", path, exc)
        raise
    configs = parse_server_configs(data or {}, **kwargs)
    logger.info(
        "Loaded %d tool server config(s) from %s: %s",
        len(configs), path, ", ".join(configs) or "(none)",
    )
    return configs

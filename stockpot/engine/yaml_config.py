"""YAML configuration loader.

One file configures the engine, extra agents and tool servers. When no
file is given, EngineConfig.from_env() and the built-in agents are used
as they are.

Example YAML:
    engine:
      max_iterations: 40
      max_nesting_depth: 2
      shell_timeout_seconds: 300
      working_dir: /path/to/project

    agents_dir: ~/.stockpot/agents

    agents:
      reviewer:
        display_name: Code Reviewer
        description: Reviews changes for bugs
        system_prompt: |
          You review code...
        tools: [read_file, grep, list_files]
        model: small-fast
        mcp_servers: [search]
        capabilities:
          file_write: false
          shell: false
          sub_agents: false

    mcp_servers:
      search:
        command: python
        args: ["-m", "search_server"]
        env:
          API_KEY: "${SEARCH_API_KEY}"
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from .agent_registry import agent_from_dict
from .config import EngineConfig
from .mcp.config import ServerConfig, parse_server_configs
from .models import AgentDefinition

logger = logging.getLogger(__name__)


@dataclass
class StockpotConfig:
    """Everything a YAML config file can set."""
    engine: EngineConfig = field(default_factory=EngineConfig)
    agents: list[AgentDefinition] = field(default_factory=list)
    servers: dict[str, ServerConfig] = field(default_factory=dict)
    agents_dir: Path | None = None


def parse_config(raw: dict, base_dir: Path | None = None) -> StockpotConfig:
    """Build a StockpotConfig from already-parsed YAML data."""
    if not isinstance(raw, dict):
        raise ValueError("config root must be a mapping")

    engine = EngineConfig.from_env().merged(raw.get("engine") or {})
    if base_dir is not None and not Path(engine.working_dir).expanduser().is_absolute():
        engine.working_dir = str((base_dir / engine.working_dir).resolve())

    agents: list[AgentDefinition] = []
    for name, data in (raw.get("agents") or {}).items():
        if not isinstance(data, dict):
            raise ValueError(f"agent '{name}' must be a mapping")
        agents.append(agent_from_dict(data, name=str(name)))

    agents_dir = raw.get("agents_dir")
    return StockpotConfig(
        engine=engine,
        agents=agents,
        servers=parse_server_configs(raw.get("mcp_servers") or {}),
        agents_dir=Path(agents_dir).expanduser() if agents_dir else None,
    )


def load_yaml_config(path: str | Path) -> StockpotConfig:
    """Load and parse a YAML config file.

    A relative ``engine.working_dir`` is resolved against the file's
    directory.
    """
    path = Path(path)
    logger.info("load_yaml_config: loading %s (exists=%s)", path, path.exists())
    try:
        with open(path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.error("load_yaml_config: config file not found at %s", path.absolute())
        raise
    except yaml.YAMLError as exc:
        logger.error("load_yaml_config: YAML parse error in %s: %s", path, exc)
        raise

    sections = sorted(raw.keys()) if isinstance(raw, dict) else []
    logger.info(
        "Parsed YAML config %s, sections: %s",
        path.name, ", ".join(sections) if sections else "(empty)",
    )
    config = parse_config(raw, base_dir=path.parent.resolve())
    logger.info(
        "load_yaml_config: %d agent(s), %d tool server(s), cwd=%s",
        len(config.agents), len(config.servers), config.engine.working_dir,
    )
    return config

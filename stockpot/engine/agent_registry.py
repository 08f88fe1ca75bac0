"""Agent registry.

Holds the AgentDefinitions that can be run directly or invoked as
sub-agents. Four definitions ship built in; more come from the
``agents:`` section of the YAML config or from a directory of JSON
files (one agent per file).

Example agent file:
    {
      "name": "reviewer",
      "display_name": "Code Reviewer",
      "description": "Reviews diffs for bugs",
      "system_prompt": "You review code...",
      "tools": ["read_file", "grep", "list_files"],
      "model": "small-fast",
      "capabilities": {"file_read": true, "shell": false}
    }
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

from .errors import AgentNotFoundError
from .models import AgentDefinition, CapabilitySet

logger = logging.getLogger(__name__)

_FULL_TOOLS = (
    "list_files",
    "read_file",
    "edit_file",
    "delete_file",
    "grep",
    "run_shell_command",
    "share_your_reasoning",
    "invoke_agent",
    "list_agents",
)

BUILTIN_AGENTS = (
    AgentDefinition(
        name="stockpot",
        display_name="Stockpot",
        description="General coding agent with full access to files, shell and sub-agents",
        system_prompt=(
            "You are Stockpot, a coding assistant working inside the user's "
            "project. Read before you edit, keep changes small and focused, "
            "run the project's checks with the shell tool after changing "
            "code, and explain what you did when you finish."
        ),
        tools=_FULL_TOOLS,
        capabilities=CapabilitySet.full(),
    ),
    AgentDefinition(
        name="explore",
        display_name="Explore",
        description="Fast, read-only codebase exploration and search",
        system_prompt=(
            "You are a READ-ONLY exploration agent. Find the code the user "
            "asks about using list_files, grep and read_file. Never modify "
            "anything. Answer with the relevant paths and line numbers, then "
            "a short explanation."
        ),
        tools=("read_file", "list_files", "grep", "share_your_reasoning"),
        capabilities=CapabilitySet.read_only(),
    ),
    AgentDefinition(
        name="planning",
        display_name="Planning",
        description="Breaks down complex coding tasks into clear, actionable steps",
        system_prompt=(
            "You are a planning agent. Study the codebase, then produce a "
            "numbered plan of concrete steps with the files each step "
            "touches. Delegate focused research to other agents with "
            "invoke_agent when that is faster. Do not edit files."
        ),
        tools=(
            "list_files",
            "read_file",
            "grep",
            "share_your_reasoning",
            "invoke_agent",
            "list_agents",
        ),
        capabilities=CapabilitySet.planning(),
    ),
    AgentDefinition(
        name="code-reviewer",
        display_name="Code Reviewer",
        description="Read-only reviewer for code quality, security and correctness",
        system_prompt=(
            "You are a READ-ONLY code reviewer. Read the changed code and its "
            "callers, then report concrete problems ordered by severity: bugs, "
            "security issues, missing error handling, then maintainability. "
            "Cite file paths and line numbers. Never modify anything."
        ),
        tools=("list_files", "read_file", "grep", "share_your_reasoning"),
        capabilities=CapabilitySet.read_only(),
    ),
)


def agent_from_dict(data: dict[str, Any], *, name: str | None = None) -> AgentDefinition:
    """Build a definition from a JSON/YAML mapping.

    No ``capabilities`` key grants nothing. A ``capabilities`` mapping
    grants every capability it does not explicitly switch off.
    """
    agent_name = str(name or data.get("name") or "").strip()
    if not agent_name:
        raise ValueError("agent definition needs a name")
    system_prompt = str(data.get("system_prompt") or "").strip()
    if not system_prompt:
        raise ValueError(f"agent '{agent_name}' needs a system_prompt")

    raw_caps = data.get("capabilities")
    if raw_caps is None:
        capabilities = CapabilitySet()
    elif isinstance(raw_caps, dict):
        merged = {cap: True for cap in CapabilitySet.full().granted()}
        merged.update({k: v for k, v in raw_caps.items() if v is not None})
        capabilities = CapabilitySet.from_mapping(merged)
    else:
        raise ValueError(f"agent '{agent_name}': capabilities must be a mapping")

    return AgentDefinition(
        name=agent_name,
        display_name=str(data.get("display_name") or agent_name),
        description=str(data.get("description") or "Custom agent"),
        system_prompt=system_prompt,
        tools=tuple(str(t) for t in data.get("tools") or ()),
        capabilities=capabilities,
        model=data.get("model") or None,
        mcp_servers=tuple(str(s) for s in data.get("mcp_servers") or ()),
    )


class AgentRegistry:
    """Name-keyed agent definitions."""

    def __init__(self, include_builtins: bool = True) -> None:
        self._agents: dict[str, AgentDefinition] = {}
        if include_builtins:
            for agent in BUILTIN_AGENTS:
                self._agents[agent.name] = agent

    def register(self, agent: AgentDefinition) -> None:
        """Register an agent (or overwrite an existing one)."""
        replaced = agent.name in self._agents
        self._agents[agent.name] = agent
        logger.info(
            "%s agent %s (capabilities: %s)",
            "Replaced" if replaced else "Registered",
            agent.name, ", ".join(agent.capabilities.granted()) or "none",
        )

    def unregister(self, name: str) -> bool:
        return self._agents.pop(name, None) is not None

    def get(self, name: str) -> AgentDefinition:
        """Raises AgentNotFoundError if not registered."""
        agent = self._agents.get(name)
        if agent is None:
            raise AgentNotFoundError(name)
        return agent

    def __contains__(self, name: object) -> bool:
        return name in self._agents

    def list_names(self) -> list[str]:
        return sorted(self._agents)

    def list_agents(self) -> list[AgentDefinition]:
        return [self._agents[n] for n in self.list_names()]

    def load_directory(self, directory: str | Path) -> list[str]:
        """Load every ``*.json`` agent file in ``directory``.

        Files starting with ``_`` or ``.`` are templates and skipped;
        a broken file is logged and skipped.
        """
        directory = Path(directory)
        loaded: list[str] = []
        if not directory.is_dir():
            logger.debug("Agent directory %s does not exist", directory)
            return loaded
        for path in sorted(directory.iterdir()):
            if path.name.startswith(("_", ".")) or path.suffix.lower() != ".json":
                continue
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                agent = agent_from_dict(data)
            except (OSError, ValueError) as exc:
                logger.warning("Failed to load agent from %s: %s", path, exc)
                continue
            self.register(agent)
            loaded.append(agent.name)
        return loaded

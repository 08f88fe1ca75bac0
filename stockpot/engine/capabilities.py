"""Capability gate.

Decides, before any handler runs, whether an agent may call a tool.
The decision is a pure function of the agent definition and the
tool's declared requirement: no I/O, no state.
"""
from __future__ import annotations

from dataclasses import dataclass

from .models import AgentDefinition, Capability


@dataclass(frozen=True)
class Allow:
    pass


@dataclass(frozen=True)
class Deny:
    reason: str


Decision = Allow | Deny


def authorize(
    agent: AgentDefinition,
    tool_name: str,
    capability: Capability | None,
    *,
    external: bool = False,
    server: str | None = None,
) -> Decision:
    """Check ``agent`` against a tool's requirement.

    ``external`` marks tools contributed by a tool server; those are
    admitted by the ``mcp`` capability instead of the agent's tool list,
    and only from the agent's attached servers when it names any.
    """
    if capability is None and not external:
        return Allow()
    if external:
        if not agent.capabilities.allows(Capability.MCP):
            return Deny(f"agent '{agent.name}' has no '{Capability.MCP.value}' capability")
        if agent.mcp_servers and server not in agent.mcp_servers:
            return Deny(f"tool server '{server}' is not attached to agent '{agent.name}'")
    elif agent.tools and tool_name not in agent.tools:
        return Deny(f"tool '{tool_name}' is not in the tool list of agent '{agent.name}'")

    if capability is not None and not agent.capabilities.allows(capability):
        return Deny(
            f"agent '{agent.name}' has no '{capability.value}' capability"
        )
    return Allow()

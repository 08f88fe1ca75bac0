"""Built-in tool handlers."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from ..tool_registry import ToolSpec


def builtin_tool_specs() -> list[ToolSpec]:
    """Fresh list of every built-in file, shell and reasoning tool.

    Sub-agent tools are added by SubAgentInvoker, external server tools
    by the tool server supervisor.
    """
    # Imported here: the handlers import tool_registry, which imports
    # tools.paths from this package.
    from .agent_tools import AGENT_TOOLS
    from .file_tools import FILE_TOOLS
    from .shell import SHELL_TOOLS

    return [*FILE_TOOLS, *SHELL_TOOLS, *AGENT_TOOLS]

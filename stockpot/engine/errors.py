"""Exception hierarchy for the agent execution core.

Tool-level failures are raised by handlers as one of these and turned
into error tool results at the registry boundary, so the model sees
them and can recover. Run-level conditions (iteration limit, recursion
limit, cancellation) end a run but are never crashes.
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CAPABILITY_DENIED = "capability_denied"
    TOOL_NOT_FOUND = "tool_not_found"
    TOOL_INVOCATION_ERROR = "tool_invocation_error"
    DIFF_CONFLICT = "diff_conflict"
    AMBIGUOUS_MATCH = "ambiguous_match"
    NO_MATCH = "no_match"
    ALREADY_EXISTS = "already_exists"
    PATCH_DID_NOT_APPLY = "patch_did_not_apply"
    SHELL_TIMEOUT = "shell_timeout"
    SHELL_NON_ZERO_EXIT = "shell_non_zero_exit"
    SERVER_UNAVAILABLE = "server_unavailable"
    TOOL_NAME_COLLISION = "tool_name_collision"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    RECURSION_LIMIT_REACHED = "recursion_limit_reached"
    CANCELLED = "cancelled"
    AGENT_NOT_FOUND = "agent_not_found"
    MODEL_CLIENT_ERROR = "model_client_error"


class StockpotError(Exception):
    """Base exception for all engine errors."""

    kind: ErrorKind = ErrorKind.TOOL_INVOCATION_ERROR


class CapabilityDeniedError(StockpotError):
    """The agent lacks the capability a tool requires."""
    kind = ErrorKind.CAPABILITY_DENIED

    def __init__(self, agent_name: str, tool_name: str, reason: str):
        self.agent_name = agent_name
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(
            f"Agent '{agent_name}' may not call '{tool_name}': {reason}"
        )


class ToolNotFoundError(StockpotError):
    """No tool is registered under the requested name."""
    kind = ErrorKind.TOOL_NOT_FOUND

    def __init__(self, tool_name: str):
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")


class ToolInvocationError(StockpotError):
    """Malformed arguments or an otherwise unusable tool request."""
    kind = ErrorKind.TOOL_INVOCATION_ERROR

    def __init__(self, tool_name: str, reason: str):
        self.tool_name = tool_name
        self.reason = reason
        super().__init__(f"Invalid call to '{tool_name}': {reason}")


class PathEscapeError(ToolInvocationError):
    """A path argument resolves outside the working tree."""

    def __init__(self, tool_name: str, path: str, root: str):
        self.path = path
        self.root = root
        super().__init__(
            tool_name, f"path '{path}' is outside the working tree {root}"
        )


class DiffConflictError(StockpotError):
    """An edit payload could not be applied to the current content."""
    kind = ErrorKind.DIFF_CONFLICT

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class AmbiguousMatchError(DiffConflictError):
    kind = ErrorKind.AMBIGUOUS_MATCH

    def __init__(self, path: str, needle: str, count: int):
        self.needle = needle
        self.count = count
        super().__init__(
            path,
            f"text matches {count} times, expected exactly once: "
            f"{_preview(needle)!r}",
        )


class NoMatchError(DiffConflictError):
    kind = ErrorKind.NO_MATCH

    def __init__(self, path: str, needle: str):
        self.needle = needle
        super().__init__(path, f"text not found: {_preview(needle)!r}")


class AlreadyExistsError(DiffConflictError):
    kind = ErrorKind.ALREADY_EXISTS

    def __init__(self, path: str):
        super().__init__(
            path, "file already exists and overwrite was not requested"
        )


class PatchDidNotApplyError(DiffConflictError):
    kind = ErrorKind.PATCH_DID_NOT_APPLY

    def __init__(self, path: str, hunk_index: int, reason: str):
        self.hunk_index = hunk_index
        super().__init__(path, f"hunk #{hunk_index} did not apply: {reason}")


class ShellTimeoutError(StockpotError):
    kind = ErrorKind.SHELL_TIMEOUT

    def __init__(self, command: str, timeout_seconds: float):
        self.command = command
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Command timed out after {timeout_seconds}s: {_preview(command)}"
        )


class ServerUnavailableError(StockpotError):
    """The external tool server is not running or its channel closed."""
    kind = ErrorKind.SERVER_UNAVAILABLE

    def __init__(self, server_name: str, reason: str = "not running"):
        self.server_name = server_name
        self.reason = reason
        super().__init__(f"Tool server '{server_name}' unavailable: {reason}")


class ToolServerError(StockpotError):
    """The tool server answered a request with an error."""

    def __init__(self, server_name: str, method: str, message: str):
        self.server_name = server_name
        self.method = method
        self.message = message
        super().__init__(f"Tool server '{server_name}' failed {method}: {message}")


class ToolNameCollisionError(StockpotError):
    kind = ErrorKind.TOOL_NAME_COLLISION

    def __init__(self, tool_name: str, existing_source: str, new_source: str):
        self.tool_name = tool_name
        self.existing_source = existing_source
        self.new_source = new_source
        super().__init__(
            f"Tool '{tool_name}' from {new_source} collides with the one "
            f"registered by {existing_source}"
        )


class RecursionLimitError(StockpotError):
    """Sub-agent nesting exceeded the configured maximum."""
    kind = ErrorKind.RECURSION_LIMIT_REACHED

    def __init__(self, agent_name: str, depth: int, max_depth: int):
        self.agent_name = agent_name
        self.depth = depth
        self.max_depth = max_depth
        super().__init__(
            f"Invoking '{agent_name}' at depth {depth} exceeds max {max_depth}"
        )


class AgentNotFoundError(StockpotError):
    kind = ErrorKind.AGENT_NOT_FOUND

    def __init__(self, agent_name: str):
        self.agent_name = agent_name
        super().__init__(f"Agent not found: {agent_name}")


class ModelClientError(StockpotError):
    """The model client failed while producing a turn."""
    kind = ErrorKind.MODEL_CLIENT_ERROR

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Model client failed: {reason}")


def _preview(text: str, limit: int = 80) -> str:
    text = text.replace("\n", "\\n")
    return text if len(text) <= limit else text[: limit - 3] + "..."

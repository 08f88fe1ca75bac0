"""Core data models for the agent execution core.

Dataclasses and enums shared by the engine, the tool registry, the
sub-agent invoker and the tool server supervisor. Kept free of
behaviour so every other module can import it without cycles.
"""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from .errors import ErrorKind


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool_result"


class ToolStatus(str, Enum):
    OK = "ok"
    ERROR = "error"


class Capability(str, Enum):
    """Coarse permissions a tool may require of the calling agent."""
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    SHELL = "shell"
    SUB_AGENTS = "sub_agents"
    MCP = "mcp"


class RunState(str, Enum):
    """Terminal states of a single AgentEngine.run()."""
    DONE = "done"
    ITERATION_LIMIT_REACHED = "iteration_limit_reached"
    RECURSION_LIMIT_REACHED = "recursion_limit_reached"
    CANCELLED = "cancelled"
    ERROR = "error"


class ServerState(str, Enum):
    """Tool server lifecycle states. See lifecycle.py for transition rules."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"


def _make_id() -> str:
    return str(uuid.uuid4())


@dataclass
class ToolCallRequest:
    """One tool call emitted by the model within a turn."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolResult:
    """Outcome of exactly one ToolCallRequest, correlated by call_id."""
    call_id: str
    status: ToolStatus
    payload: Any = ""
    tool_name: str = ""
    error_kind: ErrorKind | None = None

    @property
    def is_error(self) -> bool:
        return self.status == ToolStatus.ERROR

    @classmethod
    def ok(cls, call_id: str, payload: Any, tool_name: str = "") -> ToolResult:
        return cls(call_id, ToolStatus.OK, payload, tool_name)

    @classmethod
    def error(
        cls,
        call_id: str,
        kind: ErrorKind,
        message: str,
        tool_name: str = "",
    ) -> ToolResult:
        return cls(call_id, ToolStatus.ERROR, message, tool_name, kind)

    def text(self) -> str:
        """Payload rendered as text for the model."""
        if isinstance(self.payload, str):
            text = self.payload
        else:
            text = json.dumps(self.payload, ensure_ascii=False, default=str)
        if self.error_kind is not None:
            return f"[{self.error_kind.value}] {text}"
        return text


@dataclass
class Message:
    role: MessageRole
    content: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    tool_result: ToolResult | None = None

    @classmethod
    def user(cls, text: str) -> Message:
        return cls(MessageRole.USER, text)

    @classmethod
    def assistant(
        cls, text: str, tool_calls: list[ToolCallRequest] | None = None
    ) -> Message:
        return cls(MessageRole.ASSISTANT, text, list(tool_calls or []))

    @classmethod
    def from_result(cls, result: ToolResult) -> Message:
        return cls(MessageRole.TOOL_RESULT, result.text(), tool_result=result)


# Ordered message history; handed to and returned from the engine by value.
Conversation = list[Message]


@dataclass(frozen=True)
class CapabilitySet:
    """Immutable set of granted capabilities. Anything not granted is denied."""
    file_read: bool = False
    file_write: bool = False
    shell: bool = False
    sub_agents: bool = False
    mcp: bool = False

    def allows(self, capability: Capability | str) -> bool:
        name = capability.value if isinstance(capability, Capability) else capability
        return name in _CAPABILITY_NAMES and bool(getattr(self, name))

    def granted(self) -> list[str]:
        return [name for name in _CAPABILITY_NAMES if getattr(self, name)]

    @classmethod
    def full(cls) -> CapabilitySet:
        return cls(True, True, True, True, True)

    @classmethod
    def read_only(cls) -> CapabilitySet:
        return cls(file_read=True)

    @classmethod
    def planning(cls) -> CapabilitySet:
        return cls(file_read=True, sub_agents=True)

    @classmethod
    def from_mapping(cls, data: dict[str, Any] | None) -> CapabilitySet:
        """Build from a {name: bool} mapping; unknown names are ignored."""
        if not data:
            return cls()
        return cls(**{
            name: bool(value)
            for name, value in data.items()
            if name in _CAPABILITY_NAMES
        })


_CAPABILITY_NAMES = tuple(f.name for f in fields(CapabilitySet))


@dataclass(frozen=True)
class AgentDefinition:
    """Static description of an agent. Read-only during execution."""
    name: str
    system_prompt: str
    display_name: str = ""
    description: str = ""
    tools: tuple[str, ...] = ()
    capabilities: CapabilitySet = field(default_factory=CapabilitySet)
    model: str | None = None
    # Tool servers whose tools the agent may use; empty means all of them.
    mcp_servers: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return self.display_name or self.name


@dataclass
class TerminalOutcome:
    """Final state of a run plus the (possibly partial) transcript."""
    run_id: str
    state: RunState
    conversation: Conversation
    final_text: str = ""
    iterations: int = 0
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.DONE


@dataclass
class SubAgentSession:
    session_id: str
    agent_name: str
    conversation: Conversation = field(default_factory=list)

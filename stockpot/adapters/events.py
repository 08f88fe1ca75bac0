"""Event types emitted by the execution core.

Each event corresponds to an engine callback dict, parsed into a typed
dataclass for the presentation layer (console printer, JSONL bridge).
"""
from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


@dataclass
class EngineEvent:
    """Base event from the execution core."""
    event_type: str = ""
    run_id: str = ""
    depth: int = 0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["event"] = data.pop("event_type")
        return data


@dataclass
class RunStarted(EngineEvent):
    event_type: str = "run_started"
    agent: str = ""


@dataclass
class TextDelta(EngineEvent):
    event_type: str = "text_delta"
    agent: str = ""
    text: str = ""


@dataclass
class ToolCallStart(EngineEvent):
    event_type: str = "tool_call_start"
    agent: str = ""
    call_id: str = ""
    tool_name: str = ""
    arguments: dict[str, Any] | None = None


@dataclass
class ToolCallDelta(EngineEvent):
    event_type: str = "tool_call_delta"
    agent: str = ""
    call_id: str = ""
    tool_name: str = ""
    delta: str = ""
    stream: str = "stdout"


@dataclass
class ToolCallEnd(EngineEvent):
    event_type: str = "tool_call_end"
    agent: str = ""
    call_id: str = ""
    tool_name: str = ""
    status: str = ""
    error_kind: str | None = None
    result: str = ""


@dataclass
class Reasoning(EngineEvent):
    event_type: str = "reasoning"
    agent: str = ""
    call_id: str = ""
    reasoning: str = ""
    next_steps: str = ""


@dataclass
class RunError(EngineEvent):
    event_type: str = "error"
    kind: str = ""
    message: str = ""


@dataclass
class RunComplete(EngineEvent):
    event_type: str = "complete"
    state: str = ""
    iterations: int = 0
    final_text: str = ""


@dataclass
class ServerStateChanged(EngineEvent):
    event_type: str = "server_state"
    server: str = ""
    state: str = ""
    previous: str = ""
    diagnostic: str | None = None


_EVENT_MAP: dict[str, type[EngineEvent]] = {
    "run_started": RunStarted,
    "text_delta": TextDelta,
    "tool_call_start": ToolCallStart,
    "tool_call_delta": ToolCallDelta,
    "tool_call_end": ToolCallEnd,
    "reasoning": Reasoning,
    "error": RunError,
    "complete": RunComplete,
    "server_state": ServerStateChanged,
}


def dict_to_event(data: dict[str, Any]) -> EngineEvent:
    """Convert an engine callback dict to a typed event dataclass."""
    event_type = data.get("event", "")
    cls = _EVENT_MAP.get(event_type, EngineEvent)
    valid_fields = set(cls.__dataclass_fields__)
    filtered = {k: v for k, v in data.items() if k in valid_fields}
    filtered["event_type"] = event_type
    return cls(**filtered)

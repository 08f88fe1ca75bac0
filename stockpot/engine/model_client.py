"""Model client boundary.

The engine never performs inference itself. It hands a system prompt,
the conversation and the visible tool schemas to a ModelClient and
consumes the stream of deltas it yields: text, complete tool calls,
and an end-of-turn marker. Provider-specific clients live outside this
package; ScriptedModelClient replays canned turns for tests and for
dry runs from the CLI.
"""
from __future__ import annotations

import abc
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Union

import yaml

from .models import Conversation, Message

logger = logging.getLogger(__name__)


@dataclass
class TextDelta:
    text: str


@dataclass
class ToolCallDelta:
    """One complete tool call. Clients assemble streamed fragments first."""
    call_id: str
    tool_name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass
class EndOfTurn:
    stop_reason: str = "end_turn"


ModelDelta = Union[TextDelta, ToolCallDelta, EndOfTurn]


class ModelClient(abc.ABC):
    """Abstract model client interface."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short client name used in logs."""

    @abc.abstractmethod
    def send(
        self,
        system_prompt: str,
        conversation: Conversation,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelDelta]:
        """Stream one assistant turn.

        Implementations are async generators. Raising from the iterator
        ends the run in the error state.
        """

    def for_model(self, model: str | None) -> ModelClient:
        """Client bound to ``model``. Clients without model choice return self."""
        return self


@dataclass
class ScriptedTurn:
    text: str = ""
    tool_calls: list[ToolCallDelta] = field(default_factory=list)


@dataclass
class RecordedRequest:
    system_prompt: str
    conversation: list[Message]
    tool_names: list[str]


class ScriptedModelClient(ModelClient):
    """Replays a fixed list of turns, one per send().

    Once the script is exhausted every further turn is an empty
    end-of-turn, which ends the run normally.
    """

    def __init__(self, turns: list[ScriptedTurn] | None = None, name: str = "scripted"):
        self._turns = list(turns or [])
        self._name = name
        self.requests: list[RecordedRequest] = []

    @property
    def name(self) -> str:
        return self._name

    @property
    def remaining(self) -> int:
        return len(self._turns)

    def add_turn(self, text: str = "", tool_calls: list[ToolCallDelta] | None = None) -> None:
        self._turns.append(ScriptedTurn(text, list(tool_calls or [])))

    async def send(
        self,
        system_prompt: str,
        conversation: Conversation,
        tools: list[dict[str, Any]],
    ) -> AsyncIterator[ModelDelta]:
        self.requests.append(RecordedRequest(
            system_prompt=system_prompt,
            conversation=list(conversation),
            tool_names=[t["name"] for t in tools],
        ))
        if not self._turns:
            yield EndOfTurn()
            return
        turn = self._turns.pop(0)
        if turn.text:
            yield TextDelta(turn.text)
        for call in turn.tool_calls:
            yield ToolCallDelta(call.call_id, call.tool_name, dict(call.arguments))
        yield EndOfTurn("tool_use" if turn.tool_calls else "end_turn")

    @classmethod
    def from_data(cls, data: list[Any]) -> ScriptedModelClient:
        """Build from ``[{"text": ..., "tool_calls": [{"name", "arguments", "id"}]}]``.

        A bare string is shorthand for a text-only turn.
        """
        turns = []
        for turn_index, raw in enumerate(data or []):
            if isinstance(raw, str):
                turns.append(ScriptedTurn(text=raw))
                continue
            if not isinstance(raw, dict):
                raise ValueError(f"Script turn {turn_index} must be a string or mapping")
            calls = []
            for call_index, call in enumerate(raw.get("tool_calls") or []):
                calls.append(ToolCallDelta(
                    call_id=str(call.get("id") or f"call_{turn_index}_{call_index}"),
                    tool_name=str(call["name"]),
                    arguments=dict(call.get("arguments") or {}),
                ))
            turns.append(ScriptedTurn(text=str(raw.get("text") or ""), tool_calls=calls))
        return cls(turns)

    @classmethod
    def from_file(cls, path: str | Path) -> ScriptedModelClient:
        """Load a script from a .json or .yaml file."""
        path = Path(path)
        raw_text = path.read_text(encoding="utf-8")
        if path.suffix == ".json":
            data = json.loads(raw_text)
        else:
            data = yaml.safe_load(raw_text)
        if isinstance(data, dict):
            data = data.get("turns", [])
        client = cls.from_data(data)
        logger.info("Loaded model script %s (%d turns)", path, client.remaining)
        return client

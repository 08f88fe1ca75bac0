"""Tool registry and dispatch.

Every callable capability the model can reach is a ToolSpec
registered here by name: built-in handlers, tools contributed by
external tool servers, and sub-agent invocation. Dispatch is a dict
lookup followed by the capability gate, argument validation and the
handler call. Whatever goes wrong comes back as an error ToolResult
so the model can see it and recover.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from .capabilities import Deny, authorize
from .config import EngineConfig, EventCallback, fire_event
from .errors import (
    CapabilityDeniedError,
    ErrorKind,
    StockpotError,
    ToolInvocationError,
    ToolNameCollisionError,
    ToolNotFoundError,
)
from .models import AgentDefinition, Capability, ToolCallRequest, ToolResult
from .tools.paths import WorkTree

if TYPE_CHECKING:
    from .model_client import ModelClient

logger = logging.getLogger(__name__)


@dataclass
class ToolContext:
    """Per-call environment handed to every handler."""
    agent: AgentDefinition
    call_id: str
    work_tree: WorkTree
    config: EngineConfig
    run_id: str = ""
    depth: int = 0
    cancel_event: asyncio.Event | None = None
    event_callback: EventCallback | None = None
    model_client: ModelClient | None = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def emit(self, event: str, **data: Any) -> None:
        await fire_event(
            self.event_callback,
            {"event": event, "run_id": self.run_id, "agent": self.agent.name, **data},
        )


# Handlers take the validated argument dict and the call context. They
# return a payload (text or JSON-able data) or a ready ToolResult, and
# raise StockpotError subclasses for failures the model should see.
ToolHandler = Callable[[dict[str, Any], ToolContext], Awaitable[Any]]


@dataclass
class ToolSpec:
    name: str
    description: str
    handler: ToolHandler = field(repr=False)
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    capability: Capability | None = None
    streaming: bool = False
    source: str = "builtin"
    # Name of the external tool server that contributed this tool.
    server: str | None = None

    @property
    def external(self) -> bool:
        return self.server is not None

    def schema(self) -> dict[str, Any]:
        """Shape handed to the model client."""
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }


_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
    "null": (type(None),),
}


def validate_arguments(spec: ToolSpec, arguments: Any) -> dict[str, Any]:
    """Check arguments against the top level of the tool's JSON schema.

    Only required keys, primitive types and enums are checked; nested
    schemas are left to the handler.
    """
    if arguments is None:
        arguments = {}
    if not isinstance(arguments, dict):
        raise ToolInvocationError(spec.name, "arguments must be a JSON object")

    schema = spec.parameters or {}
    properties: dict[str, Any] = schema.get("properties") or {}
    missing = [key for key in schema.get("required") or [] if key not in arguments]
    if missing:
        raise ToolInvocationError(
            spec.name, f"missing required argument(s): {', '.join(missing)}"
        )

    for key, value in arguments.items():
        prop = properties.get(key)
        if not isinstance(prop, dict):
            continue
        expected = prop.get("type")
        if isinstance(expected, str) and expected in _JSON_TYPES:
            ok = isinstance(value, _JSON_TYPES[expected])
            if expected in ("integer", "number") and isinstance(value, bool):
                ok = False
            if not ok:
                raise ToolInvocationError(
                    spec.name,
                    f"argument '{key}' must be of type {expected}, "
                    f"got {type(value).__name__}",
                )
        if "enum" in prop and value not in prop["enum"]:
            raise ToolInvocationError(
                spec.name,
                f"argument '{key}' must be one of {prop['enum']!r}",
            )
    return arguments


class ToolRegistry:
    """Closed, name-keyed set of tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        existing = self._tools.get(spec.name)
        if existing is not None:
            raise ToolNameCollisionError(
                spec.name, _describe_source(existing), _describe_source(spec)
            )
        self._tools[spec.name] = spec
        logger.debug(
            "Registered tool %s (source=%s capability=%s)",
            spec.name, _describe_source(spec),
            spec.capability.value if spec.capability else "none",
        )

    def register_many(self, specs: list[ToolSpec]) -> None:
        """Register all of ``specs`` or none of them."""
        names = [s.name for s in specs]
        seen: set[str] = set()
        for spec in specs:
            existing = self._tools.get(spec.name)
            if existing is not None:
                raise ToolNameCollisionError(
                    spec.name, _describe_source(existing), _describe_source(spec)
                )
            if spec.name in seen:
                raise ToolNameCollisionError(
                    spec.name, _describe_source(spec), _describe_source(spec)
                )
            seen.add(spec.name)
        for spec in specs:
            self._tools[spec.name] = spec
        logger.debug("Registered %d tools: %s", len(names), ", ".join(names))

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def unregister_server(self, server: str) -> list[str]:
        """Drop every tool contributed by ``server``."""
        removed = [n for n, s in self._tools.items() if s.server == server]
        for name in removed:
            del self._tools[name]
        if removed:
            logger.debug("Unregistered %d tools of server %s", len(removed), server)
        return removed

    def get(self, name: str) -> ToolSpec:
        spec = self._tools.get(name)
        if spec is None:
            raise ToolNotFoundError(name)
        return spec

    def find(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return sorted(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def specs_for(self, agent: AgentDefinition) -> list[ToolSpec]:
        """Tools the agent is allowed to see, in registration order."""
        visible = []
        for spec in self._tools.values():
            decision = authorize(
                agent, spec.name, spec.capability, external=spec.external, server=spec.server
            )
            if isinstance(decision, Deny):
                continue
            # Unlisted capability-free tools stay callable but are not advertised.
            if (
                not spec.external
                and agent.tools
                and spec.name not in agent.tools
            ):
                continue
            visible.append(spec)
        return visible

    def schemas_for(self, agent: AgentDefinition) -> list[dict[str, Any]]:
        return [spec.schema() for spec in self.specs_for(agent)]

    async def dispatch(self, request: ToolCallRequest, context: ToolContext) -> ToolResult:
        """Run one tool call through gate, validation and handler."""
        name = request.tool_name
        spec = self._tools.get(name)
        if spec is None:
            logger.info("Unknown tool %s requested by %s", name, context.agent.name)
            return ToolResult.error(
                request.call_id, ErrorKind.TOOL_NOT_FOUND, str(ToolNotFoundError(name)), name
            )

        decision = authorize(
            context.agent, name, spec.capability, external=spec.external, server=spec.server
        )
        if isinstance(decision, Deny):
            denied = CapabilityDeniedError(context.agent.name, name, decision.reason)
            logger.info("%s", denied)
            return ToolResult.error(request.call_id, denied.kind, str(denied), name)

        started = time.monotonic()
        try:
            arguments = validate_arguments(spec, request.arguments)
            payload = await spec.handler(arguments, context)
        except StockpotError as exc:
            logger.info(
                "Tool %s failed kind=%s call_id=%s: %s",
                name, exc.kind.value, request.call_id[:12], exc,
            )
            return ToolResult.error(request.call_id, exc.kind, str(exc), name)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Tool %s crashed call_id=%s", name, request.call_id[:12])
            return ToolResult.error(
                request.call_id,
                ErrorKind.TOOL_INVOCATION_ERROR,
                f"Tool '{name}' failed: {exc}",
                name,
            )

        logger.debug(
            "Tool %s finished call_id=%s in %.2fs",
            name, request.call_id[:12], time.monotonic() - started,
        )
        if isinstance(payload, ToolResult):
            payload.call_id = request.call_id
            payload.tool_name = payload.tool_name or name
            return payload
        return ToolResult.ok(request.call_id, payload, name)


def _describe_source(spec: ToolSpec) -> str:
    return f"server '{spec.server}'" if spec.server else spec.source

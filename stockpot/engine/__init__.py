"""Stockpot execution core: tool-calling loop, capability gate, tools and tool servers."""
from .models import (
    AgentDefinition,
    Capability,
    CapabilitySet,
    Message,
    MessageRole,
    RunState,
    ServerState,
    SubAgentSession,
    TerminalOutcome,
    ToolCallRequest,
    ToolResult,
    ToolStatus,
)
from .config import EngineConfig
from .errors import (
    AgentNotFoundError,
    AlreadyExistsError,
    AmbiguousMatchError,
    CapabilityDeniedError,
    DiffConflictError,
    ErrorKind,
    ModelClientError,
    NoMatchError,
    PatchDidNotApplyError,
    PathEscapeError,
    RecursionLimitError,
    ServerUnavailableError,
    StockpotError,
    ToolInvocationError,
    ToolNameCollisionError,
    ToolNotFoundError,
    ToolServerError,
)

__all__ = [
    # Core (lazy import to avoid circular deps)
    "AgentEngine",
    "Runtime",
    "ToolRegistry",
    "ToolSpec",
    "AgentRegistry",
    "SubAgentInvoker",
    "ToolServerSupervisor",
    # Model client (lazy import)
    "ModelClient",
    "ScriptedModelClient",
    # YAML config (lazy import)
    "StockpotConfig",
    "load_yaml_config",
    # Models
    "AgentDefinition",
    "Capability",
    "CapabilitySet",
    "Message",
    "MessageRole",
    "RunState",
    "ServerState",
    "SubAgentSession",
    "TerminalOutcome",
    "ToolCallRequest",
    "ToolResult",
    "ToolStatus",
    # Config
    "EngineConfig",
    # Errors
    "AgentNotFoundError",
    "AlreadyExistsError",
    "AmbiguousMatchError",
    "CapabilityDeniedError",
    "DiffConflictError",
    "ErrorKind",
    "ModelClientError",
    "NoMatchError",
    "PatchDidNotApplyError",
    "PathEscapeError",
    "RecursionLimitError",
    "ServerUnavailableError",
    "StockpotError",
    "ToolInvocationError",
    "ToolNameCollisionError",
    "ToolNotFoundError",
    "ToolServerError",
]


def __getattr__(name: str):
    if name == "AgentEngine":
        from .engine import AgentEngine
        return AgentEngine
    if name == "Runtime":
        from .runtime import Runtime
        return Runtime
    if name in ("ToolRegistry", "ToolSpec"):
        from . import tool_registry
        return getattr(tool_registry, name)
    if name == "AgentRegistry":
        from .agent_registry import AgentRegistry
        return AgentRegistry
    if name == "SubAgentInvoker":
        from .sub_agents import SubAgentInvoker
        return SubAgentInvoker
    if name == "ToolServerSupervisor":
        from .mcp.supervisor import ToolServerSupervisor
        return ToolServerSupervisor
    if name in ("ModelClient", "ScriptedModelClient"):
        from . import model_client
        return getattr(model_client, name)
    if name in ("StockpotConfig", "load_yaml_config"):
        from . import yaml_config
        return getattr(yaml_config, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

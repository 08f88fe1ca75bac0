"""External tool servers speaking line-delimited JSON over stdio."""
from .client import ToolServerChannel
from .config import ServerConfig, expand_env_vars, load_server_configs, parse_server_configs
from .supervisor import (
    ReloadReport,
    ServerStatus,
    ToolServerSupervisor,
    qualified_tool_name,
)

__all__ = [
    "ReloadReport",
    "ServerConfig",
    "ServerStatus",
    "ToolServerChannel",
    "ToolServerSupervisor",
    "expand_env_vars",
    "load_server_configs",
    "parse_server_configs",
    "qualified_tool_name",
]

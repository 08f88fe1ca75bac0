"""Runtime: wires the execution core together.

Builds one ToolRegistry with the built-in tools, the sub-agent tools
and whatever the tool server supervisor registers, plus an agent
registry and a top-level AgentEngine.

Example:
    runtime = Runtime(config, model_client_factory=make_client)
    await runtime.start_servers()
    outcome = await runtime.run("stockpot", "Add a --verbose flag")
    await runtime.shutdown()
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .agent_registry import AgentRegistry
from .config import EngineConfig, fire_event
from .engine import AgentEngine
from .mcp.config import ServerConfig
from .mcp.supervisor import ReloadReport, ServerStatus, ToolServerSupervisor
from .model_client import ModelClient
from .models import Conversation, Message, TerminalOutcome
from .sub_agents import ModelClientFactory, SubAgentInvoker
from .tool_registry import ToolRegistry
from .tools import builtin_tool_specs
from .tools.paths import WorkTree
from .yaml_config import StockpotConfig

logger = logging.getLogger(__name__)


class Runtime:
    def __init__(
        self,
        config: StockpotConfig | EngineConfig | None = None,
        *,
        model_client_factory: ModelClientFactory | None = None,
    ) -> None:
        if isinstance(config, EngineConfig):
            config = StockpotConfig(engine=config)
        self._settings = config or StockpotConfig(engine=EngineConfig.from_env())
        self._config = self._settings.engine
        self._factory = model_client_factory
        self._work_tree = WorkTree(Path(self._config.working_dir))

        self._tools = ToolRegistry()
        self._tools.register_many(builtin_tool_specs())

        self._agents = AgentRegistry()
        if self._settings.agents_dir is not None:
            self._agents.load_directory(self._settings.agents_dir)
        for agent in self._settings.agents:
            self._agents.register(agent)

        self._invoker = SubAgentInvoker(
            self._agents,
            self._tools,
            self._config,
            model_client_factory=model_client_factory,
            work_tree=self._work_tree,
        )
        self._invoker.register_tools()

        self._supervisor = ToolServerSupervisor(self._tools, self._config)
        for server in self._settings.servers.values():
            self._supervisor.add(server)

        self._engine = AgentEngine(self._tools, self._config, work_tree=self._work_tree)
        self._shutdown_lock = asyncio.Lock()

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def tools(self) -> ToolRegistry:
        return self._tools

    @property
    def agents(self) -> AgentRegistry:
        return self._agents

    @property
    def invoker(self) -> SubAgentInvoker:
        return self._invoker

    @property
    def supervisor(self) -> ToolServerSupervisor:
        return self._supervisor

    @property
    def engine(self) -> AgentEngine:
        return self._engine

    async def start_servers(self) -> list[ServerStatus]:
        statuses = await self._supervisor.start_all()
        failed = [s.name for s in statuses if s.diagnostic]
        if failed:
            logger.warning("Tool servers failed to start: %s", ", ".join(failed))
        return statuses

    async def reload_servers(self, servers: dict[str, ServerConfig]) -> ReloadReport:
        return await self._supervisor.apply_config(servers)

    async def run(
        self,
        agent_name: str | None,
        prompt: str,
        *,
        model_client: ModelClient | None = None,
        history: Conversation | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> TerminalOutcome:
        """Run one agent on ``prompt`` appended to ``history``."""
        agent = self._agents.get(agent_name or self._config.default_agent)
        if model_client is None:
            if self._factory is None:
                raise ValueError("Runtime.run needs a model_client or a model_client_factory")
            model_client = self._factory(agent.model)
        elif agent.model:
            model_client = model_client.for_model(agent.model)
        conversation = [*(history or []), Message.user(prompt)]
        return await self._engine.run(agent, conversation, model_client, cancel_event)

    async def shutdown(self) -> None:
        """Stop every tool server. Safe to call more than once."""
        if self._shutdown_lock.locked():
            logger.info("Shutdown already in progress, skipping concurrent call")
            return
        async with self._shutdown_lock:
            await self._supervisor.shutdown()
            await fire_event(self._config.event_callback, {"event": "runtime_shutdown"})
            logger.info("Runtime shutdown complete")

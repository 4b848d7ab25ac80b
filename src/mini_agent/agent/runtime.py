"""
Agent runtime: builds the tool substrate from settings and owns the session.
"""

import asyncio
from pathlib import Path

import structlog

from ..config import Settings, ToolServerConfig, get_settings, load_server_configs
from ..errors import Cancelled
from ..llm import BaseLLM, create_llm
from ..mcp import MCPClient, connect_servers
from ..tools import ShellConfig, ToolRegistry, create_shell_tool
from .compaction import LLMCompressor
from .context import ContextManager, get_size_metric
from .core import Agent, AgentRunResult

logger = structlog.get_logger()


class AgentRuntime:
    """
    One agent session with its MCP servers.

    Usage::

        async with AgentRuntime(settings) as runtime:
            result = await runtime.run("List the files here")

    ``cancel()`` stops the run in progress (including any subagents and
    outstanding tool calls) and shuts every tool server down; the pending
    ``run()`` raises ``Cancelled``.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        llm: BaseLLM | None = None,
        server_configs: list[ToolServerConfig] | None = None,
        system_prompt: str | None = None,
    ):
        self.settings = settings or get_settings()
        self.llm = llm
        self.server_configs = server_configs
        self.system_prompt = system_prompt
        self.registry = ToolRegistry()
        self.clients: list[MCPClient] = []
        self.agent: Agent | None = None
        self._run_task: asyncio.Task[AgentRunResult] | None = None
        self._cancelled = False

    async def __aenter__(self) -> "AgentRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def new_context(self) -> ContextManager:
        """A fresh context configured from settings."""
        return ContextManager(
            compressor=LLMCompressor(self.llm),
            budget=self.settings.compression_budget,
            keep_recent=self.settings.keep_recent_messages,
            metric=get_size_metric(self.settings.compression_metric),
        )

    async def start(self) -> None:
        """Register native tools, then connect MCP servers in configuration order."""
        if self.llm is None:
            self.llm = create_llm(settings=self.settings)

        if self.settings.enable_shell_tool:
            self.registry.register(create_shell_tool(
                ShellConfig(timeout_seconds=self.settings.shell_timeout_seconds)
            ))

        if self.settings.enable_mcp:
            configs = self.server_configs
            if configs is None:
                configs = load_server_configs(Path(self.settings.mcp_config_path))
            self.clients = await connect_servers(
                configs,
                self.registry,
                request_timeout=self.settings.tool_timeout_seconds,
                handshake_timeout=self.settings.handshake_timeout_seconds,
                shutdown_grace=self.settings.shutdown_grace_seconds,
                max_consecutive_timeouts=self.settings.max_consecutive_timeouts,
            )

        self.agent = Agent(
            llm=self.llm,
            tool_registry=self.registry,
            system_prompt=self.system_prompt,
            max_turns=self.settings.max_turns,
            max_subagent_depth=self.settings.max_subagent_depth,
            retry_attempts=self.settings.model_retry_attempts,
            retry_base_delay=self.settings.model_retry_base_delay,
            context_factory=self.new_context,
        )

        logger.info(
            "Agent runtime started",
            tools=len(self.registry),
            mcp_servers=len(self.clients),
        )

    async def run(self, user_input: str) -> AgentRunResult:
        """Run one user turn.

        Raises:
            Cancelled: the session was cancelled before or during the run.
        """
        if self.agent is None:
            raise RuntimeError("AgentRuntime.start() has not been called")
        if self._cancelled:
            raise Cancelled("Session was cancelled")
        if self._run_task is not None:
            raise RuntimeError("A run is already in progress")

        self._run_task = asyncio.create_task(self.agent.run(user_input), name="agent-run")
        try:
            return await self._run_task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise
            self.agent.context.abandon_pending("cancelled")
            raise Cancelled("Session was cancelled") from None
        finally:
            self._run_task = None

    def reset(self) -> None:
        """Start a new conversation with the same tools."""
        if self.agent is not None:
            self.agent.context = self.new_context()

    async def cancel(self) -> None:
        """Cancel the current run and shut all tool servers down."""
        if self._cancelled:
            return
        self._cancelled = True
        logger.warning("Session cancelled")

        task = self._run_task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

        await self._close_clients(Cancelled("Session was cancelled"))

    async def aclose(self) -> None:
        """Shut every tool server down."""
        await self._close_clients()

    async def _close_clients(self, error: Exception | None = None) -> None:
        clients, self.clients = self.clients, []
        results = await asyncio.gather(
            *(client.close(error) for client in clients),
            return_exceptions=True,
        )
        for client, result in zip(clients, results):
            if isinstance(result, Exception):
                logger.error("Error closing MCP client", server=client.name, error=str(result))

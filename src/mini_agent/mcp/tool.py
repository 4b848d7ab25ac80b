"""
MCP tools as registry targets.
"""

import asyncio
from typing import Any, Iterable

import structlog

from ..config import ToolServerConfig
from ..errors import MCPError
from ..tools.base import BaseTool, ToolDescriptor, ToolResult
from ..tools.registry import ToolRegistry
from .client import MCPClient

logger = structlog.get_logger()


class MCPTool(BaseTool):
    """One tool discovered on an MCP server, routed through its client."""

    def __init__(self, client: MCPClient, descriptor: ToolDescriptor, timeout: float | None = None):
        self.client = client
        self.timeout = timeout
        self._descriptor = ToolDescriptor(
            name=descriptor.name,
            description=f"[MCP:{client.name}] {descriptor.description}".rstrip(),
            input_schema=descriptor.input_schema,
            source=client.name,
        )

    @property
    def descriptor(self) -> ToolDescriptor:
        return self._descriptor

    async def invoke(self, arguments: dict[str, Any]) -> ToolResult:
        return await self.client.invoke(self._descriptor.name, arguments, timeout=self.timeout)


async def connect_servers(
    configs: Iterable[ToolServerConfig],
    registry: ToolRegistry,
    request_timeout: float = 60.0,
    handshake_timeout: float = 30.0,
    shutdown_grace: float = 5.0,
    max_consecutive_timeouts: int = 3,
) -> list[MCPClient]:
    """
    Start every configured server and register its tools.

    Servers connect concurrently, but tools are registered in configuration
    order so name collisions resolve the same way on every run. A server
    that fails to spawn, handshake or list its tools is logged, closed and
    contributes nothing.

    Returns:
        The clients that came up, in configuration order.
    """
    clients = [
        MCPClient(
            config,
            request_timeout=request_timeout,
            handshake_timeout=handshake_timeout,
            shutdown_grace=shutdown_grace,
            max_consecutive_timeouts=max_consecutive_timeouts,
        )
        for config in configs
    ]

    async def start(client: MCPClient) -> bool:
        try:
            await client.connect()
            await client.list_tools()
        except MCPError as e:
            logger.error("MCP server unavailable", server=client.name, error=str(e))
            await client.close()
            return False
        return True

    try:
        outcomes = await asyncio.gather(*(start(client) for client in clients))
    except BaseException:
        await asyncio.gather(*(client.close() for client in clients), return_exceptions=True)
        raise

    live = []
    for client, ok in zip(clients, outcomes):
        if not ok:
            continue
        registered = sum(
            registry.register(MCPTool(client, descriptor)) for descriptor in client.tools
        )
        logger.info(
            "MCP server ready",
            server=client.name,
            tools=len(client.tools),
            registered=registered,
        )
        live.append(client)
    return live

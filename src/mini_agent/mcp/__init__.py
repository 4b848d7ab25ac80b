"""MCP stdio client and tool adapters."""

from .client import ClientState, MCPClient, PendingRequest
from .tool import MCPTool, connect_servers
from .transport import StdioTransport

__all__ = [
    "ClientState",
    "MCPClient",
    "MCPTool",
    "PendingRequest",
    "StdioTransport",
    "connect_servers",
]

"""
Tool registry: one namespace over native tools and every MCP server.
"""

from typing import Any

import structlog

from ..errors import UnknownTool
from ..llm.base import ToolDefinition
from .base import BaseTool, ToolDescriptor, ToolResult

logger = structlog.get_logger()


class ToolRegistry:
    """Routes tool calls by name.

    The first registration of a name wins; later ones are rejected and
    logged. No argument validation happens here, the target owns that.
    The registry is populated once at startup and only read afterwards,
    so parent agents and subagents share it without locking.
    """

    def __init__(self):
        self._tools: dict[str, BaseTool] = {}

    def register(self, tool: BaseTool) -> bool:
        """Register a tool. Returns False if the name was already taken."""
        descriptor = tool.descriptor
        existing = self._tools.get(descriptor.name)
        if existing is not None:
            logger.warning(
                "Tool name collision, keeping first registration",
                tool_name=descriptor.name,
                kept_source=existing.descriptor.source,
                rejected_source=descriptor.source,
            )
            return False

        self._tools[descriptor.name] = tool
        logger.info("Tool registered", tool_name=descriptor.name, source=descriptor.source)
        return True

    def get(self, name: str) -> BaseTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        """List all registered tool names in registration order."""
        return list(self._tools.keys())

    def list_descriptors(self) -> list[ToolDescriptor]:
        """Current descriptor set, in registration order."""
        return [tool.descriptor for tool in self._tools.values()]

    def get_definitions(self) -> list[ToolDefinition]:
        """Tool catalog for the LLM."""
        return [descriptor.to_definition() for descriptor in self.list_descriptors()]

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Invoke a tool by name.

        Raises:
            UnknownTool: nothing is registered under ``name``.

        Errors raised by the target propagate unchanged.
        """
        tool = self.get(name)
        if tool is None:
            raise UnknownTool(name)

        logger.info("Invoking tool", tool_name=name, source=tool.descriptor.source)
        result = await tool.invoke(arguments)
        logger.info("Tool finished", tool_name=name, success=result.success)
        return result

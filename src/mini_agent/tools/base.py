"""
Base classes for tools.

Every tool source (native handlers, MCP servers, the subagent delegate)
implements BaseTool, so the registry and agent loop only ever see
``descriptor`` and ``invoke(arguments)``.
"""

import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

import structlog

from ..llm.base import ToolDefinition

logger = structlog.get_logger()

NATIVE_SOURCE = "native"


@dataclass
class ToolResult:
    """Result from a tool execution."""

    success: bool
    output: str = ""
    data: Any = None
    error: str | None = None

    def to_message_content(self) -> str:
        """Text placed in the tool-result message."""
        if self.success:
            return self.output
        return f"Error: {self.error or self.output or 'unknown error'}"


@dataclass(frozen=True)
class ToolDescriptor:
    """What the model sees of a tool, plus where it came from."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )
    source: str = NATIVE_SOURCE

    def to_definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.input_schema,
        )


@dataclass
class ToolParameter:
    """Definition of a tool parameter."""

    name: str
    param_type: str  # string, integer, boolean, array, object
    description: str
    required: bool = True
    default: Any = None
    enum: list[str] | None = None


class BaseTool(ABC):
    """Base class for all invocation targets."""

    @property
    @abstractmethod
    def descriptor(self) -> ToolDescriptor:
        """Get the tool descriptor."""
        pass

    @property
    def name(self) -> str:
        return self.descriptor.name

    @abstractmethod
    async def invoke(self, arguments: dict[str, Any]) -> ToolResult:
        """Run the tool with the given arguments."""
        pass


@dataclass
class Tool(BaseTool):
    """
    Native tool created from an async function.

    Handler exceptions become failed results; argument checking is left
    to the handler itself.
    """

    tool_name: str
    description: str
    parameters: list[ToolParameter]
    handler: Callable[..., Coroutine[Any, Any, ToolResult]]

    def get_parameters_schema(self) -> dict[str, Any]:
        """Convert parameters to JSON Schema format."""
        properties = {}
        required = []

        for param in self.parameters:
            prop = {
                "type": param.param_type,
                "description": param.description,
            }
            if param.enum:
                prop["enum"] = param.enum
            if param.default is not None:
                prop["default"] = param.default

            properties[param.name] = prop

            if param.required:
                required.append(param.name)

        return {
            "type": "object",
            "properties": properties,
            "required": required,
        }

    @property
    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.tool_name,
            description=self.description,
            input_schema=self.get_parameters_schema(),
            source=NATIVE_SOURCE,
        )

    async def invoke(self, arguments: dict[str, Any]) -> ToolResult:
        try:
            inspect.signature(self.handler).bind(**arguments)
        except TypeError as e:
            return ToolResult(success=False, error=f"Invalid arguments for {self.tool_name}: {e}")

        try:
            return await self.handler(**arguments)
        except Exception as e:
            logger.error("Native tool error", tool_name=self.tool_name, error=str(e))
            return ToolResult(success=False, error=str(e))

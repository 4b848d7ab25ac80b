"""
Tools module for agent capabilities.
"""

from .base import NATIVE_SOURCE, BaseTool, Tool, ToolDescriptor, ToolParameter, ToolResult
from .registry import ToolRegistry
from .shell_tool import ShellConfig, create_shell_tool

__all__ = [
    "NATIVE_SOURCE",
    "BaseTool",
    "Tool",
    "ToolDescriptor",
    "ToolParameter",
    "ToolResult",
    "ToolRegistry",
    "ShellConfig",
    "create_shell_tool",
]

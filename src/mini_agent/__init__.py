"""Mini-Agent: an agent runtime with MCP tool servers, context compression and subagents."""

__version__ = "0.1.0"

"""
Error taxonomy for the agent runtime.

Transport and protocol failures are isolated per tool server and surfaced
to the model as failed tool results. Everything else ends the session.
"""

from typing import Any


class AgentError(Exception):
    """Base class for all runtime errors."""


# ---------------------------------------------------------------------------
# MCP transport / protocol
# ---------------------------------------------------------------------------


class MCPError(AgentError):
    """Failure talking to an out-of-process tool server."""

    def __init__(self, message: str, server: str | None = None):
        super().__init__(message)
        self.server = server


class SpawnError(MCPError):
    """The tool-server executable could not be started."""


class WriteError(MCPError):
    """The tool-server process no longer accepts input."""


class StreamClosed(MCPError):
    """The tool-server output stream reached end of file."""


class ProtocolError(MCPError):
    """Malformed data on the wire."""


class TransportLost(MCPError):
    """The tool-server process went away while requests were in flight."""


class Timeout(MCPError, TimeoutError):
    """A request did not get a response in time."""


class HandshakeError(MCPError):
    """The initialization exchange failed or timed out."""


class ToolError(MCPError):
    """A JSON-RPC error object returned by the tool server."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        data: Any = None,
        server: str | None = None,
    ):
        super().__init__(message, server=server)
        self.code = code
        self.data = data

    def __str__(self) -> str:
        if self.code is None:
            return super().__str__()
        return f"MCP error {self.code}: {super().__str__()}"


# ---------------------------------------------------------------------------
# Registry / session
# ---------------------------------------------------------------------------


class UnknownTool(AgentError):
    """No tool with the requested name is registered."""

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' not found")
        self.name = name


class SequenceError(AgentError):
    """A message was appended out of causal order."""


class CompressionError(AgentError):
    """The compressor could not produce a summary."""


class DepthExceeded(AgentError):
    """Subagent delegation went deeper than allowed."""

    def __init__(self, depth: int, max_depth: int):
        super().__init__(f"Subagent depth {depth} exceeds the maximum of {max_depth}")
        self.depth = depth
        self.max_depth = max_depth


class TurnLimitExceeded(AgentError):
    """The agent loop ran out of turns before producing a final answer."""

    def __init__(self, max_turns: int, partial: str = ""):
        super().__init__(f"Reached the maximum of {max_turns} turns without a final answer")
        self.max_turns = max_turns
        self.partial = partial


class Cancelled(AgentError):
    """The session was cancelled."""


# ---------------------------------------------------------------------------
# Model backend
# ---------------------------------------------------------------------------


class ModelError(AgentError):
    """Failure reported by the language-model backend."""


class BackendUnavailable(ModelError):
    """The backend could not be reached or returned a server error."""


class RateLimited(ModelError):
    """The backend asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedResponse(ModelError):
    """The backend replied with something we cannot interpret."""

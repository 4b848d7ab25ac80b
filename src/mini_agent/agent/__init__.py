"""
Agent module - the brain of the system.

Includes:
- Agent: the tool-using loop over an LLM
- ContextManager: transcript with checkpointed compression
- SubagentOrchestrator: delegation to nested agents
- AgentRuntime: wires MCP servers, tools and the agent together
- SessionManager: persistent conversation sessions
"""

from .compaction import Compressor, LLMCompressor, TruncatingCompressor
from .context import ContextManager, estimate_tokens, get_size_metric, message_count
from .core import Agent, AgentRunResult, StopReason
from .runtime import AgentRuntime
from .session import SessionInfo, SessionManager
from .subagent import SubagentOrchestrator, SubagentStatus, SubagentTask, SubagentType

__all__ = [
    "Agent",
    "AgentRunResult",
    "AgentRuntime",
    "Compressor",
    "ContextManager",
    "LLMCompressor",
    "SessionInfo",
    "SessionManager",
    "StopReason",
    "SubagentOrchestrator",
    "SubagentStatus",
    "SubagentTask",
    "SubagentType",
    "TruncatingCompressor",
    "estimate_tokens",
    "get_size_metric",
    "message_count",
]

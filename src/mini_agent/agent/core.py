"""
Core agent implementation.

This is the brain of the system. Each run:
1. Appends the user input to the context
2. Sends the context view and tool catalog to the LLM
3. Dispatches any tool calls concurrently (MCP, native, or subagent)
4. Appends results in the order the calls were made
5. Lets the context manager compress, and loops until a final answer
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Callable

import structlog

from ..errors import AgentError, DepthExceeded, MCPError, RateLimited, TurnLimitExceeded, UnknownTool
from ..llm import BaseLLM, LLMMessage, LLMResponse, ToolCall, ToolDefinition
from ..tools import ToolRegistry, ToolResult
from .context import ContextManager
from .subagent import DELEGATE_TOOL_NAME, SubagentOrchestrator, delegate_tool_definition

logger = structlog.get_logger()

DEFAULT_SYSTEM_PROMPT = """You are Mini-Agent, a helpful AI assistant that works through tools.

Guidelines:
1. Be helpful, accurate, and concise
2. Use tools when you need information or need to act; do not guess their output
3. If a tool fails, read the error and try a different approach
4. Delegate large self-contained subtasks with the subagent tool
5. When you are done, reply with the final answer and no tool calls"""

# Errors a tool call can hit that the model should see and reason about.
TOOL_CALL_ERRORS = (MCPError, UnknownTool, DepthExceeded)


class StopReason(str, Enum):
    FINISHED = "finished"
    TURN_LIMIT = "turn_limit"


@dataclass
class AgentRunResult:
    """Outcome of one Agent.run()."""

    content: str
    stop_reason: StopReason
    turns: int
    tool_calls: int = 0
    input_tokens: int = 0
    output_tokens: int = 0
    error: AgentError | None = None

    @property
    def completed(self) -> bool:
        return self.stop_reason == StopReason.FINISHED


class Agent:
    """
    The agent loop.

    One Agent owns one ContextManager. The ToolRegistry is shared, read-only,
    with every subagent this agent spawns.
    """

    def __init__(
        self,
        llm: BaseLLM,
        tool_registry: ToolRegistry,
        context: ContextManager | None = None,
        system_prompt: str | None = None,
        max_turns: int = 50,
        max_subagent_depth: int = 2,
        depth: int = 0,
        retry_attempts: int = 3,
        retry_base_delay: float = 1.0,
        context_factory: Callable[[], ContextManager] | None = None,
    ):
        if max_turns < 1:
            raise ValueError("max_turns must be >= 1")
        self.llm = llm
        self.tool_registry = tool_registry
        self.context_factory = context_factory or ContextManager
        self.context = context if context is not None else self.context_factory()
        self.system_prompt = system_prompt or DEFAULT_SYSTEM_PROMPT
        self.max_turns = max_turns
        self.depth = depth
        self.retry_attempts = retry_attempts
        self.retry_base_delay = retry_base_delay
        self.subagents = SubagentOrchestrator(self, max_depth=max_subagent_depth)

    def spawn_child(self, system_prompt: str, max_turns: int) -> "Agent":
        """A nested agent with a fresh context and this agent's tools."""
        return Agent(
            llm=self.llm,
            tool_registry=self.tool_registry,
            context=self.context_factory(),
            system_prompt=system_prompt,
            max_turns=max_turns,
            max_subagent_depth=self.subagents.max_depth,
            depth=self.depth + 1,
            retry_attempts=self.retry_attempts,
            retry_base_delay=self.retry_base_delay,
            context_factory=self.context_factory,
        )

    def tool_catalog(self) -> list[ToolDefinition]:
        """Registry tools plus the delegate tool.

        The delegate is left out when a registered tool owns its name or
        this agent is already at the delegation depth limit.
        """
        definitions = self.tool_registry.get_definitions()
        if DELEGATE_TOOL_NAME not in self.tool_registry and self.subagents.can_delegate:
            definitions.append(delegate_tool_definition())
        return definitions

    async def run(self, user_input: str) -> AgentRunResult:
        """Process one user message until the model gives a final answer.

        Running out of turns is not raised; it comes back as a result with
        ``stop_reason=TURN_LIMIT`` and the last text the model produced.

        Raises:
            ModelError: the backend failed (rate limits are retried first). Tool
                calls still outstanding are answered with error results first.
            SequenceError: the transcript order was violated.
        """
        self.context.append(LLMMessage(role="user", content=user_input))

        partial = ""
        tool_call_count = 0
        input_tokens = output_tokens = 0

        for turn in range(1, self.max_turns + 1):
            response = await self._generate()
            input_tokens += response.input_tokens
            output_tokens += response.output_tokens
            if response.content:
                partial = response.content

            if response.is_final:
                self.context.append(LLMMessage(role="assistant", content=response.content))
                await self.context.maybe_compress()
                logger.info(
                    "Agent finished",
                    depth=self.depth,
                    turns=turn,
                    tool_calls=tool_call_count,
                )
                return AgentRunResult(
                    content=response.content,
                    stop_reason=StopReason.FINISHED,
                    turns=turn,
                    tool_calls=tool_call_count,
                    input_tokens=input_tokens,
                    output_tokens=output_tokens,
                )

            self.context.append(LLMMessage(
                role="assistant",
                content=response.content,
                tool_calls=response.tool_calls,
            ))

            try:
                results = await self._dispatch(response.tool_calls)
            except AgentError as e:
                self.context.abandon_pending(f"{type(e).__name__}: {e}")
                raise
            tool_call_count += len(results)

            for call, result in zip(response.tool_calls, results):
                self.context.append(LLMMessage(
                    role="tool",
                    content=result.to_message_content(),
                    tool_call_id=call.id,
                    name=call.name,
                    is_error=not result.success,
                ))

            await self.context.maybe_compress()

        error = TurnLimitExceeded(self.max_turns, partial=partial)
        logger.warning("Agent turn limit reached", depth=self.depth, max_turns=self.max_turns)
        return AgentRunResult(
            content=partial,
            stop_reason=StopReason.TURN_LIMIT,
            turns=self.max_turns,
            tool_calls=tool_call_count,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error=error,
        )

    async def _generate(self) -> LLMResponse:
        """Call the LLM, backing off exponentially while rate limited."""
        attempt = 0
        while True:
            try:
                return await self.llm.generate(
                    messages=self.context.current_view(),
                    tools=self.tool_catalog(),
                    system_prompt=self.system_prompt,
                )
            except RateLimited as e:
                attempt += 1
                if attempt > self.retry_attempts:
                    logger.error("LLM still rate limited, giving up", attempts=attempt)
                    raise
                delay = e.retry_after if e.retry_after is not None else self.retry_base_delay * 2 ** (attempt - 1)
                logger.warning("LLM rate limited, retrying", attempt=attempt, delay=delay)
                await asyncio.sleep(delay)

    async def _dispatch(self, calls: list[ToolCall]) -> list[ToolResult]:
        """Run all calls of one turn concurrently; results keep call order."""
        tasks = [
            asyncio.create_task(self._execute(call), name=f"tool-{call.name}-{call.id}")
            for call in calls
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _execute(self, call: ToolCall) -> ToolResult:
        logger.info("Executing tool", tool=call.name, depth=self.depth, arguments=call.arguments)
        try:
            if call.name == DELEGATE_TOOL_NAME and call.name not in self.tool_registry:
                return await self.subagents.invoke(call.arguments)
            return await self.tool_registry.invoke(call.name, call.arguments)
        except TOOL_CALL_ERRORS as e:
            logger.warning("Tool call failed", tool=call.name, error=str(e), error_type=type(e).__name__)
            return ToolResult(success=False, error=str(e))

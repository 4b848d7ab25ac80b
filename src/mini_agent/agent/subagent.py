"""
Subagent delegation.

The parent model gets a synthetic ``subagent`` tool. Each call runs a
nested Agent with an empty transcript and the parent's tool registry, and
its final answer becomes the tool result in the parent transcript.
"""

import asyncio
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

import structlog

from ..errors import DepthExceeded
from ..llm.base import LLMMessage, ToolDefinition
from ..tools.base import ToolResult

if TYPE_CHECKING:
    from .core import Agent

logger = structlog.get_logger()

DELEGATE_TOOL_NAME = "subagent"


class SubagentType(str, Enum):
    CODE = "code"
    TEST = "test"
    DOC = "doc"
    ANALYSIS = "analysis"
    DYNAMIC = "dynamic"


class SubagentStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


SUBAGENT_PROMPTS: dict[SubagentType, str] = {
    SubagentType.CODE: """You are a code subagent. You implement, refactor and optimize code.

Guidelines:
1. Write clean code that follows the conventions already in the project
2. Handle edge cases and errors
3. Comment only where the logic is not obvious
4. Run the tests to check your changes""",
    SubagentType.TEST: """You are a test subagent. You write and improve tests.

Guidelines:
1. Cover normal paths, edge cases and error scenarios
2. Use the testing framework the project already uses
3. Keep tests fast and isolated
4. Name tests after the behavior they check""",
    SubagentType.DOC: """You are a documentation subagent. You write and improve documentation.

Guidelines:
1. Be clear and concise
2. Include examples where they help
3. Document public APIs thoroughly
4. Use Markdown""",
    SubagentType.ANALYSIS: """You are an analysis subagent. You study a codebase and report on it.

Guidelines:
1. Describe structure and architecture
2. Point out patterns and anti-patterns
3. Assess code quality and suggest improvements
4. Be thorough, and cite files and functions""",
    SubagentType.DYNAMIC: """You are a subagent working on one delegated task.

Guidelines:
1. Focus only on the task you were given
2. Use the available tools as needed
3. Finish with a complete, self-contained answer""",
}

SUBAGENT_PROMPT_FOOTER = """

You have no access to the conversation that led to this task. Your final message is returned to the agent that delegated it, so make it the complete result."""


def delegate_tool_definition() -> ToolDefinition:
    """Tool catalog entry for delegation."""
    return ToolDefinition(
        name=DELEGATE_TOOL_NAME,
        description=(
            "Delegate a self-contained task to a subagent with a fresh context. "
            "The subagent can use the same tools and returns its final answer. "
            "Several subagent calls in one turn run in parallel."
        ),
        parameters={
            "type": "object",
            "properties": {
                "task": {
                    "type": "string",
                    "description": "Complete description of the task, including any context it needs",
                },
                "type": {
                    "type": "string",
                    "enum": [t.value for t in SubagentType],
                    "description": "Specialization of the subagent (default: dynamic)",
                },
                "max_turns": {
                    "type": "integer",
                    "description": "Maximum model calls the subagent may use",
                },
            },
            "required": ["task"],
        },
    )


@dataclass
class SubagentTask:
    """Bookkeeping for one delegation."""

    description: str
    agent_type: SubagentType
    depth: int
    max_turns: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    status: SubagentStatus = SubagentStatus.PENDING
    result: str | None = None
    error: str | None = None
    transcript: list[LLMMessage] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None


class SubagentOrchestrator:
    """
    Runs delegated tasks for one Agent.

    Depth is explicit: the parent's depth plus one is checked against
    ``max_depth`` before anything is created.
    """

    def __init__(self, parent: "Agent", max_depth: int = 2):
        self.parent = parent
        self.max_depth = max_depth
        self.tasks: dict[str, SubagentTask] = {}

    @property
    def can_delegate(self) -> bool:
        """Whether a child would still be within ``max_depth``."""
        return self.parent.depth + 1 <= self.max_depth

    def get_task(self, task_id: str) -> SubagentTask | None:
        return self.tasks.get(task_id)

    def list_tasks(self, status: SubagentStatus | None = None) -> list[SubagentTask]:
        return [t for t in self.tasks.values() if status is None or t.status == status]

    async def invoke(self, arguments: dict[str, Any]) -> ToolResult:
        """Entry point for a ``subagent`` tool call.

        Raises:
            DepthExceeded: the delegation would nest deeper than ``max_depth``.
        """
        task = arguments.get("task")
        if not isinstance(task, str) or not task.strip():
            return ToolResult(success=False, error="Missing required argument 'task'")

        raw_type = arguments.get("type") or SubagentType.DYNAMIC.value
        try:
            agent_type = SubagentType(str(raw_type).lower())
        except ValueError:
            agent_type = SubagentType.DYNAMIC

        max_turns = arguments.get("max_turns")
        if max_turns is not None and (not isinstance(max_turns, int) or max_turns < 1):
            return ToolResult(success=False, error=f"Invalid max_turns: {max_turns!r}")

        return await self.delegate(task, agent_type, max_turns)

    async def delegate(
        self,
        description: str,
        agent_type: SubagentType = SubagentType.DYNAMIC,
        max_turns: int | None = None,
    ) -> ToolResult:
        """Run a subagent to completion and return its answer as a tool result."""
        depth = self.parent.depth + 1
        if not self.can_delegate:
            logger.warning("Subagent depth limit reached", depth=depth, max_depth=self.max_depth)
            raise DepthExceeded(depth, self.max_depth)

        turns = self.parent.max_turns if max_turns is None else min(max_turns, self.parent.max_turns)
        sub = SubagentTask(
            description=description,
            agent_type=agent_type,
            depth=depth,
            max_turns=turns,
        )
        self.tasks[sub.id] = sub

        child = self.parent.spawn_child(
            system_prompt=SUBAGENT_PROMPTS[agent_type] + SUBAGENT_PROMPT_FOOTER,
            max_turns=turns,
        )

        logger.info(
            "Subagent started",
            subagent_id=sub.id,
            agent_type=agent_type.value,
            depth=depth,
            max_turns=turns,
        )
        sub.status = SubagentStatus.RUNNING

        try:
            result = await child.run(description)
        except asyncio.CancelledError:
            self._finish(sub, SubagentStatus.FAILED, error="cancelled")
            raise
        except Exception as e:
            self._finish(sub, SubagentStatus.FAILED, error=str(e))
            raise
        finally:
            sub.transcript = child.context.current_view()

        data = {"subagent_id": sub.id, "turns": result.turns, "stop_reason": result.stop_reason.value}

        if result.completed:
            self._finish(sub, SubagentStatus.COMPLETED, result=result.content)
            return ToolResult(success=True, output=result.content, data=data)

        self._finish(sub, SubagentStatus.FAILED, result=result.content, error=str(result.error))
        message = f"Subagent {sub.id} did not finish: {result.error}"
        if result.content:
            message += f"\nPartial result:\n{result.content}"
        return ToolResult(success=False, output=result.content, data=data, error=message)

    def _finish(
        self,
        sub: SubagentTask,
        status: SubagentStatus,
        result: str | None = None,
        error: str | None = None,
    ) -> None:
        sub.status = status
        sub.result = result
        sub.error = error
        sub.finished_at = datetime.now(timezone.utc)
        log = logger.info if status == SubagentStatus.COMPLETED else logger.warning
        log("Subagent finished", subagent_id=sub.id, status=status.value, error=error)

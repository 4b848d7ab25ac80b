"""
Conversation context with checkpointed compression.

The transcript the model sees is always ``[summary] + live messages``:
older messages are folded into a single summary message and dropped from
the live list, and the checkpoint records how many were folded so far.
"""

import json
from typing import Callable

import structlog

from ..errors import CompressionError, SequenceError
from ..llm.base import LLMMessage
from .compaction import Compressor, TruncatingCompressor

logger = structlog.get_logger()

# Approximate tokens per character (conservative estimate)
CHARS_PER_TOKEN = 4

SizeMetric = Callable[[list[LLMMessage]], int]


def estimate_tokens(messages: list[LLMMessage]) -> int:
    """Estimate token count for a list of messages."""
    total_chars = 0
    for m in messages:
        total_chars += len(m.content)
        for call in m.tool_calls or []:
            total_chars += len(call.name) + len(json.dumps(call.arguments))
    # Add overhead for role markers and formatting
    overhead = len(messages) * 20
    return (total_chars + overhead) // CHARS_PER_TOKEN


def message_count(messages: list[LLMMessage]) -> int:
    """Size as a plain number of messages."""
    return len(messages)


SIZE_METRICS: dict[str, SizeMetric] = {
    "tokens": estimate_tokens,
    "messages": message_count,
}


def get_size_metric(name: str) -> SizeMetric:
    """Look up a size metric by its configuration name."""
    try:
        return SIZE_METRICS[name]
    except KeyError:
        raise ValueError(f"Unknown compression metric: {name}") from None


class ContextManager:
    """
    Owns one session transcript.

    ``append`` enforces causal order: after an assistant message carrying
    tool calls, the next appends must be the matching tool results, in the
    order the calls were made. ``maybe_compress`` folds everything but the
    ``keep_recent`` newest messages into a summary once the view is over
    ``budget`` (measured with ``metric``).
    """

    def __init__(
        self,
        compressor: Compressor | None = None,
        budget: int = 8192,
        keep_recent: int = 4,
        metric: SizeMetric = estimate_tokens,
    ):
        if keep_recent < 0:
            raise ValueError("keep_recent must be >= 0")
        self.compressor = compressor or TruncatingCompressor()
        self.budget = budget
        self.keep_recent = keep_recent
        self.metric = metric

        self._messages: list[LLMMessage] = []
        self._summary: LLMMessage | None = None
        self._checkpoint = 0
        self._awaiting: list[str] = []
        self.compression_count = 0

    @property
    def messages(self) -> list[LLMMessage]:
        """Live (post-checkpoint) messages."""
        return list(self._messages)

    @property
    def summary(self) -> LLMMessage | None:
        return self._summary

    @property
    def checkpoint(self) -> int:
        """Number of messages folded into the summary so far."""
        return self._checkpoint

    @property
    def awaiting_tool_results(self) -> list[str]:
        """Tool-call ids whose results have not been appended yet."""
        return list(self._awaiting)

    def __len__(self) -> int:
        return len(self._messages)

    def append(self, message: LLMMessage) -> None:
        """Add a message, rejecting anything that breaks call/result order.

        Raises:
            SequenceError: a tool result arrives unrequested or out of turn, or
                another message is appended while tool results are outstanding.
        """
        if self._awaiting:
            expected = self._awaiting[0]
            if message.role != "tool":
                raise SequenceError(
                    f"Expected result for tool call {expected}, got a {message.role} message"
                )
            if message.tool_call_id != expected:
                raise SequenceError(
                    f"Expected result for tool call {expected}, got {message.tool_call_id}"
                )
            self._awaiting.pop(0)
        elif message.role == "tool":
            raise SequenceError(
                f"Tool result {message.tool_call_id} does not answer an outstanding tool call"
            )

        if message.role == "assistant" and message.tool_calls:
            self._awaiting = [call.id for call in message.tool_calls]

        self._messages.append(message)

    def extend(self, messages: list[LLMMessage]) -> None:
        for message in messages:
            self.append(message)

    def abandon_pending(self, reason: str) -> int:
        """Answer every outstanding tool call with an error result.

        Used after a cancelled or failed turn so the transcript is consistent again.
        Returns the number of results appended.
        """
        abandoned = list(self._awaiting)
        for call_id in abandoned:
            self.append(LLMMessage(
                role="tool",
                content=f"Error: {reason}",
                tool_call_id=call_id,
                is_error=True,
            ))
        return len(abandoned)

    def current_view(self) -> list[LLMMessage]:
        """The transcript to send to the model."""
        if self._summary is None:
            return list(self._messages)
        return [self._summary, *self._messages]

    def size(self) -> int:
        """Size of the current view under the configured metric."""
        return self.metric(self.current_view())

    def needs_compression(self) -> bool:
        return self.size() > self.budget

    async def maybe_compress(self) -> bool:
        """Compress if over budget. Returns True if a checkpoint was taken.

        A compressor failure is logged and leaves the transcript as it was.
        """
        if self._awaiting:
            logger.debug("Skipping compression while tool results are outstanding")
            return False

        size = self.size()
        if size <= self.budget:
            return False

        split = self._split_point()
        if split <= 0:
            logger.debug(
                "Context over budget but nothing old enough to compress",
                size=size,
                budget=self.budget,
                live_messages=len(self._messages),
            )
            return False

        older = self._messages[:split]
        to_fold = [self._summary, *older] if self._summary is not None else older

        logger.info(
            "Compressing context",
            size=size,
            budget=self.budget,
            folding=len(older),
            keeping=len(self._messages) - split,
        )

        try:
            summary = await self.compressor.compress(to_fold)
        except CompressionError as e:
            logger.warning("Context compression failed, keeping full transcript", error=str(e))
            return False

        self._summary = summary
        self._messages = self._messages[split:]
        self._checkpoint += split
        self.compression_count += 1

        logger.info(
            "Context compressed",
            checkpoint=self._checkpoint,
            size=self.size(),
            live_messages=len(self._messages),
        )
        return True

    def _split_point(self) -> int:
        split = len(self._messages) - self.keep_recent
        if split <= 0:
            return 0
        # Tool results stay next to the call that requested them.
        while 0 < split < len(self._messages) and self._messages[split].role == "tool":
            split -= 1
        return split

    def clear(self) -> None:
        """Drop all messages and the summary."""
        self._messages = []
        self._summary = None
        self._checkpoint = 0
        self._awaiting = []

    def restore(
        self,
        messages: list[LLMMessage],
        summary: LLMMessage | None = None,
        checkpoint: int = 0,
    ) -> None:
        """Replace the state with a saved one, re-checking message order."""
        self.clear()
        self.extend(messages)
        self._summary = summary
        self._checkpoint = checkpoint

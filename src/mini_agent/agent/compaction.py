"""
Conversation Compaction - turns old messages into one summary message.

Two compressors share the same interface:
- LLMCompressor asks the model for a fact-preserving summary
- TruncatingCompressor builds a heuristic digest without any model call

Both return a single user-role message starting with SUMMARY_PREFIX, which
the context manager puts in front of the live transcript.
"""

import json
from typing import Protocol

import structlog

from ..errors import CompressionError, ModelError
from ..llm.base import BaseLLM, LLMMessage

logger = structlog.get_logger()

SUMMARY_PREFIX = "Previous conversation summary:"

# Truncation applied to each message when building a transcript for the summarizer
MAX_CHARS_PER_MESSAGE = 300


class Compressor(Protocol):
    """Anything that can fold a message sequence into one summary message."""

    async def compress(self, messages: list[LLMMessage]) -> LLMMessage:
        """Raises CompressionError if no summary could be produced."""
        ...


def summary_message(summary: str) -> LLMMessage:
    return LLMMessage(role="user", content=f"{SUMMARY_PREFIX}\n{summary}")


def _render_message(msg: LLMMessage, limit: int = MAX_CHARS_PER_MESSAGE) -> str:
    role = msg.role.upper()
    if msg.role == "tool":
        status = "error" if msg.is_error else "ok"
        role = f"TOOL RESULT ({msg.name or msg.tool_call_id}, {status})"
    line = f"{role}: {msg.content[:limit]}"
    for call in msg.tool_calls or []:
        line += f"\n  -> call {call.name}({json.dumps(call.arguments)[:limit]})"
    return line


def _extract_key_facts(messages: list[LLMMessage]) -> list[str]:
    """Extract key facts and information from messages for the summary."""
    facts = []

    for msg in messages:
        content = msg.content

        if msg.content.startswith(SUMMARY_PREFIX):
            facts.append(f"[Earlier summary]: {content[len(SUMMARY_PREFIX):].strip()[:300]}")
            continue

        # Tool results often contain important data
        if msg.role == "tool" and content.strip():
            label = "Tool error" if msg.is_error else "Tool result"
            if msg.name:
                label = f"{label} {msg.name}"
            facts.append(f"[{label}]: {content[:200]}")

        # Look for messages where user states facts
        if msg.role == "user":
            content_lower = content.lower()
            if any(phrase in content_lower for phrase in [
                "my name is", "i work", "i live", "i prefer",
                "remember that", "don't forget", "important:",
            ]):
                facts.append(f"[User stated]: {content[:200]}")

    return facts[:10]  # Cap at 10 key facts


class LLMCompressor:
    """Summarizes with a model call."""

    def __init__(self, llm: BaseLLM, max_chars_per_message: int = MAX_CHARS_PER_MESSAGE):
        self.llm = llm
        self.max_chars_per_message = max_chars_per_message

    async def compress(self, messages: list[LLMMessage]) -> LLMMessage:
        transcript = "\n".join(
            _render_message(msg, self.max_chars_per_message) for msg in messages
        )

        key_facts = _extract_key_facts(messages)
        facts_section = ""
        if key_facts:
            facts_section = "\n\nKey facts to preserve:\n" + "\n".join(f"- {f}" for f in key_facts)

        summary_prompt = f"""Summarize the following conversation into a concise context block.
Preserve:
- Any specific facts, names, dates, or numbers mentioned
- The user's requests and what was accomplished
- Decisions that were made and why
- Tool calls, their results, and anything still left to do

Keep it under 500 words.{facts_section}

Conversation:
{transcript}

Summary:"""

        try:
            response = await self.llm.generate(
                messages=[LLMMessage(role="user", content=summary_prompt)],
                system_prompt="You are a conversation summarizer. Create concise, fact-preserving summaries.",
            )
        except ModelError as e:
            raise CompressionError(f"Summarization failed: {e}") from e

        summary = response.content.strip()
        if not summary:
            raise CompressionError("Summarizer returned an empty summary")

        logger.debug("LLM summary generated", messages=len(messages), chars=len(summary))
        return summary_message(summary)


class TruncatingCompressor:
    """Builds a digest from counts, key facts and topics. Never fails."""

    async def compress(self, messages: list[LLMMessage]) -> LLMMessage:
        return summary_message(_fallback_summary(messages, _extract_key_facts(messages)))


def _fallback_summary(
    messages: list[LLMMessage],
    key_facts: list[str],
) -> str:
    """Create a basic summary without an LLM."""
    parts = ["Earlier in this conversation:"]

    if key_facts:
        parts.append("\nKey information:")
        for fact in key_facts:
            parts.append(f"  - {fact}")

    user_count = sum(1 for m in messages if m.role == "user")
    assistant_count = sum(1 for m in messages if m.role == "assistant")
    tool_count = sum(1 for m in messages if m.role == "tool")

    parts.append(
        f"\n[{user_count} user messages, {assistant_count} assistant responses, "
        f"{tool_count} tool results summarized]"
    )

    # First and last user messages for context
    user_messages = [
        m for m in messages if m.role == "user" and not m.content.startswith(SUMMARY_PREFIX)
    ]
    if user_messages:
        parts.append(f"\nFirst topic: {user_messages[0].content[:150]}")
        if len(user_messages) > 1:
            parts.append(f"Last topic before this: {user_messages[-1].content[:150]}")

    return "\n".join(parts)

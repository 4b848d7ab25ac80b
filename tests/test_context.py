"""
Tests for the context manager.
"""

from unittest.mock import AsyncMock

import pytest

from mini_agent.agent.compaction import SUMMARY_PREFIX, TruncatingCompressor, summary_message
from mini_agent.agent.context import ContextManager, estimate_tokens, get_size_metric, message_count
from mini_agent.errors import CompressionError, SequenceError
from mini_agent.llm.base import LLMMessage, ToolCall


def user(text: str) -> LLMMessage:
    return LLMMessage(role="user", content=text)


def assistant(text: str, calls: list[ToolCall] | None = None) -> LLMMessage:
    return LLMMessage(role="assistant", content=text, tool_calls=calls)


def result(call_id: str, text: str = "ok") -> LLMMessage:
    return LLMMessage(role="tool", content=text, tool_call_id=call_id, name="t")


def counting_context(budget: int = 4, keep_recent: int = 2, compressor=None) -> ContextManager:
    return ContextManager(
        compressor=compressor or TruncatingCompressor(),
        budget=budget,
        keep_recent=keep_recent,
        metric=message_count,
    )


def test_tool_results_follow_their_calls():
    """Test results must arrive in the order the calls were made."""
    context = ContextManager()
    context.append(user("hi"))
    context.append(assistant("", [ToolCall("c1", "t", {}), ToolCall("c2", "t", {})]))

    assert context.awaiting_tool_results == ["c1", "c2"]
    context.append(result("c1"))
    context.append(result("c2"))
    assert context.awaiting_tool_results == []

    context.append(assistant("done"))
    assert [m.role for m in context.current_view()] == ["user", "assistant", "tool", "tool", "assistant"]


def test_out_of_order_result_rejected():
    """Test a result for the second call cannot come first."""
    context = ContextManager()
    context.append(user("hi"))
    context.append(assistant("", [ToolCall("c1", "t", {}), ToolCall("c2", "t", {})]))

    with pytest.raises(SequenceError):
        context.append(result("c2"))
    assert len(context) == 2


def test_message_between_call_and_result_rejected():
    """Test nothing else may be appended while results are outstanding."""
    context = ContextManager()
    context.append(user("hi"))
    context.append(assistant("", [ToolCall("c1", "t", {})]))

    with pytest.raises(SequenceError):
        context.append(user("interrupt"))
    with pytest.raises(SequenceError):
        context.append(assistant("again"))


def test_unrequested_result_rejected():
    """Test a tool result with no outstanding call is rejected."""
    context = ContextManager()
    context.append(user("hi"))

    with pytest.raises(SequenceError):
        context.append(result("c1"))


def test_abandon_pending_answers_outstanding_calls():
    """Test outstanding calls get error results so the transcript is valid again."""
    context = ContextManager()
    context.append(user("hi"))
    context.append(assistant("", [ToolCall("c1", "t", {}), ToolCall("c2", "t", {})]))
    context.append(result("c1"))

    assert context.abandon_pending("cancelled") == 1
    last = context.messages[-1]
    assert last.tool_call_id == "c2"
    assert last.is_error is True
    assert "cancelled" in last.content

    context.append(user("next"))


@pytest.mark.asyncio
async def test_budget_of_four_compresses_six_messages_once():
    """Test six messages under a four-message budget become summary + last two."""
    context = counting_context(budget=4, keep_recent=2)
    messages = [user("m1"), assistant("m2"), user("m3"), assistant("m4"), user("m5"), assistant("m6")]
    context.extend(messages)

    assert await context.maybe_compress() is True

    view = context.current_view()
    assert len(view) == 3
    assert view[0].content.startswith(SUMMARY_PREFIX)
    assert view[1] is messages[4]
    assert view[2] is messages[5]
    assert context.checkpoint == 4
    assert message_count(view) < 4

    assert await context.maybe_compress() is False
    assert context.compression_count == 1


@pytest.mark.asyncio
async def test_under_budget_does_nothing():
    """Test no compression while within budget."""
    compressor = AsyncMock()
    context = counting_context(budget=10, compressor=compressor)
    context.extend([user("a"), assistant("b")])

    assert await context.maybe_compress() is False
    compressor.compress.assert_not_called()


@pytest.mark.asyncio
async def test_compression_failure_leaves_transcript_untouched():
    """Test a failing compressor is logged and changes nothing."""
    compressor = AsyncMock()
    compressor.compress.side_effect = CompressionError("backend down")
    context = counting_context(budget=2, keep_recent=1, compressor=compressor)
    messages = [user("a"), assistant("b"), user("c"), assistant("d")]
    context.extend(messages)

    assert await context.maybe_compress() is False

    assert context.current_view() == messages
    assert context.summary is None
    assert context.checkpoint == 0


@pytest.mark.asyncio
async def test_recent_messages_kept_verbatim():
    """Test the newest keep_recent messages survive compression as-is."""
    context = counting_context(budget=3, keep_recent=3)
    messages = [user(f"m{i}") if i % 2 else assistant(f"m{i}") for i in range(1, 9)]
    context.extend(messages)

    await context.maybe_compress()

    assert context.messages == messages[-3:]
    assert all(a is b for a, b in zip(context.messages, messages[-3:]))


@pytest.mark.asyncio
async def test_kept_window_never_starts_with_tool_result():
    """Test the split moves back so results stay with their call."""
    compressor = AsyncMock()
    compressor.compress.return_value = summary_message("earlier")
    context = counting_context(budget=1, keep_recent=3, compressor=compressor)
    call = assistant("", [ToolCall("c1", "t", {}), ToolCall("c2", "t", {})])
    context.extend([user("q"), call, result("c1"), result("c2"), assistant("answer")])

    assert await context.maybe_compress() is True

    folded = compressor.compress.call_args.args[0]
    assert [m.content for m in folded] == ["q"]
    assert context.messages[0] is call
    assert context.checkpoint == 1


@pytest.mark.asyncio
async def test_no_compression_while_awaiting_results():
    """Test compression waits until every tool call has its result."""
    compressor = AsyncMock()
    context = counting_context(budget=1, keep_recent=0, compressor=compressor)
    context.extend([user("q"), assistant("", [ToolCall("c1", "t", {})])])

    assert await context.maybe_compress() is False
    compressor.compress.assert_not_called()


@pytest.mark.asyncio
async def test_second_compression_folds_previous_summary():
    """Test a later compression includes the earlier summary in its input."""
    compressor = AsyncMock()
    compressor.compress.side_effect = [summary_message("first"), summary_message("second")]
    context = counting_context(budget=3, keep_recent=2, compressor=compressor)

    context.extend([user("a"), assistant("b"), user("c"), assistant("d")])
    await context.maybe_compress()
    first_summary = context.summary

    context.extend([user("e"), assistant("f")])
    await context.maybe_compress()

    folded = compressor.compress.call_args.args[0]
    assert folded[0] is first_summary
    assert [m.content for m in folded[1:]] == ["c", "d"]
    assert context.summary.content.endswith("second")
    assert context.checkpoint == 4


@pytest.mark.asyncio
async def test_nothing_eligible_when_all_messages_are_recent():
    """Test an over-budget context with only recent messages is left alone."""
    compressor = AsyncMock()
    context = counting_context(budget=1, keep_recent=4, compressor=compressor)
    context.extend([user("a"), assistant("b")])

    assert await context.maybe_compress() is False
    compressor.compress.assert_not_called()


def test_restore_replays_order_checks():
    """Test restore rebuilds state and validates the message order."""
    context = ContextManager()
    summary = summary_message("before")
    context.restore([user("a"), assistant("b")], summary=summary, checkpoint=7)

    assert context.current_view()[0] is summary
    assert context.checkpoint == 7

    with pytest.raises(SequenceError):
        context.restore([result("orphan")])


def test_clear_resets_everything():
    """Test clear drops messages, summary and checkpoint."""
    context = ContextManager()
    context.restore([user("a")], summary=summary_message("s"), checkpoint=3)
    context.clear()

    assert context.current_view() == []
    assert context.checkpoint == 0


def test_estimate_tokens_counts_tool_arguments():
    """Test tool call arguments contribute to the token estimate."""
    plain = [assistant("x")]
    with_call = [assistant("x", [ToolCall("c1", "search", {"query": "a" * 400})])]

    assert estimate_tokens(with_call) > estimate_tokens(plain) + 90


def test_get_size_metric():
    """Test metrics are looked up by configuration name."""
    assert get_size_metric("messages") is message_count
    assert get_size_metric("tokens") is estimate_tokens
    with pytest.raises(ValueError):
        get_size_metric("bytes")

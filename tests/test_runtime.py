"""
Tests for the agent runtime: startup from settings and cancellation.
"""

import asyncio

import pytest

from mini_agent.agent.runtime import AgentRuntime
from mini_agent.agent.subagent import DELEGATE_TOOL_NAME, SUBAGENT_PROMPT_FOOTER, SubagentStatus
from mini_agent.config import Settings, ToolServerConfig
from mini_agent.errors import BackendUnavailable, Cancelled
from mini_agent.llm.base import ToolCall
from mini_agent.mcp import ClientState, MCPClient, MCPTool
from mini_agent.tools.base import Tool, ToolDescriptor, ToolResult

from helpers import FakeTransport, FunctionLLM, ScriptedLLM, final, tool_calls
from test_transport import server_config


def make_settings(**overrides) -> Settings:
    values = {
        "enable_mcp": False,
        "enable_shell_tool": False,
        "tool_timeout_seconds": 10,
        "handshake_timeout_seconds": 10,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def hanging_tool(started: asyncio.Event) -> Tool:
    async def hang() -> ToolResult:
        started.set()
        await asyncio.Event().wait()
        return ToolResult(success=True, output="unreachable")

    return Tool(tool_name="hang", description="Never returns", parameters=[], handler=hang)


@pytest.mark.asyncio
async def test_runtime_registers_native_then_mcp_tools():
    """Test the shell tool comes first, then each server's tools in order."""
    llm = ScriptedLLM([
        tool_calls(ToolCall("c1", "search", {"query": "docs"})),
        final("found it"),
    ])
    settings = make_settings(enable_mcp=True, enable_shell_tool=True)

    async with AgentRuntime(settings, llm=llm, server_configs=[server_config("alpha")]) as runtime:
        assert runtime.registry.list_tools() == ["bash", "echo", "search", "fail"]
        assert [c.name for c in runtime.clients] == ["alpha"]

        result = await runtime.run("look it up")

        assert result.content == "found it"
        assert llm.calls[1]["messages"][-1].content == "alpha:docs"
        assert [t.name for t in llm.calls[0]["tools"]][-1] == DELEGATE_TOOL_NAME
        clients = list(runtime.clients)

    assert runtime.clients == []
    assert all(c.state == ClientState.CLOSED for c in clients)


@pytest.mark.asyncio
async def test_runtime_context_uses_settings():
    """Test contexts are built from the configured budget and metric."""
    runtime = AgentRuntime(
        make_settings(compression_metric="messages", compression_budget=12, keep_recent_messages=3),
        llm=ScriptedLLM([]),
    )
    await runtime.start()

    context = runtime.agent.context
    assert context.budget == 12
    assert context.keep_recent == 3
    assert context.metric(context.current_view()) == 0

    await runtime.aclose()


@pytest.mark.asyncio
async def test_run_before_start():
    """Test running an unstarted runtime is a programming error."""
    runtime = AgentRuntime(make_settings(), llm=ScriptedLLM([]))

    with pytest.raises(RuntimeError):
        await runtime.run("hi")


@pytest.mark.asyncio
async def test_reset_starts_new_conversation():
    """Test reset drops the transcript but keeps the tools."""
    runtime = AgentRuntime(make_settings(enable_shell_tool=True), llm=ScriptedLLM([final("hi")]))
    await runtime.start()
    await runtime.run("hello")

    runtime.reset()

    assert runtime.agent.context.current_view() == []
    assert runtime.registry.list_tools() == ["bash"]


@pytest.mark.asyncio
async def test_cancel_during_tool_call():
    """Test cancel stops an in-flight tool, repairs the transcript and ends the session."""
    started = asyncio.Event()
    llm = ScriptedLLM([tool_calls(ToolCall("c1", "hang", {}))])
    runtime = AgentRuntime(make_settings(), llm=llm)
    await runtime.start()
    runtime.registry.register(hanging_tool(started))

    run_task = asyncio.create_task(runtime.run("go"))
    await asyncio.wait_for(started.wait(), timeout=2)
    await runtime.cancel()

    with pytest.raises(Cancelled):
        await run_task

    context = runtime.agent.context
    assert context.awaiting_tool_results == []
    last = context.messages[-1]
    assert last.tool_call_id == "c1"
    assert last.is_error

    assert runtime.cancelled
    with pytest.raises(Cancelled):
        await runtime.run("again")


@pytest.mark.asyncio
async def test_backend_failure_in_subagent_leaves_session_usable():
    """Test a failed run answers its outstanding calls so the next run can proceed."""
    child_failures = [BackendUnavailable("connection refused")]

    def handler(messages, system_prompt):
        if SUBAGENT_PROMPT_FOOTER in (system_prompt or ""):
            if child_failures:
                raise child_failures.pop()
            return final("unused")
        if messages[-1].content == "first":
            return tool_calls(ToolCall("d1", DELEGATE_TOOL_NAME, {"task": "fails"}))
        return final("second answer")

    runtime = AgentRuntime(make_settings(), llm=FunctionLLM(handler))
    await runtime.start()

    with pytest.raises(BackendUnavailable):
        await runtime.run("first")

    context = runtime.agent.context
    assert context.awaiting_tool_results == []
    abandoned = context.messages[-1]
    assert abandoned.tool_call_id == "d1"
    assert abandoned.is_error
    assert "connection refused" in abandoned.content

    result = await runtime.run("second")
    assert result.content == "second answer"
    assert not runtime.cancelled


@pytest.mark.asyncio
async def test_cancel_reaches_subagents():
    """Test a running subagent is marked failed when the session is cancelled."""
    started = asyncio.Event()

    def handler(messages, system_prompt):
        if SUBAGENT_PROMPT_FOOTER in (system_prompt or ""):
            return tool_calls(ToolCall("h1", "hang", {}))
        return tool_calls(ToolCall("d1", DELEGATE_TOOL_NAME, {"task": "wait forever"}))

    runtime = AgentRuntime(make_settings(), llm=FunctionLLM(handler))
    await runtime.start()
    runtime.registry.register(hanging_tool(started))

    run_task = asyncio.create_task(runtime.run("go"))
    await asyncio.wait_for(started.wait(), timeout=2)
    await runtime.cancel()

    with pytest.raises(Cancelled):
        await run_task

    task = runtime.agent.subagents.list_tasks()[0]
    assert task.status == SubagentStatus.FAILED
    assert task.error == "cancelled"


@pytest.mark.asyncio
async def test_cancel_shuts_down_mcp_servers():
    """Test cancel closes every client and nothing is left pending."""
    transport = FakeTransport()
    client = MCPClient(ToolServerConfig(name="remote", command="unused"), transport=transport)
    await client.connect()

    runtime = AgentRuntime(make_settings(), llm=ScriptedLLM([tool_calls(ToolCall("c1", "slow", {}))]))
    await runtime.start()
    runtime.registry.register(MCPTool(client, ToolDescriptor(name="slow", description="Slow remote tool")))
    runtime.clients.append(client)

    run_task = asyncio.create_task(runtime.run("go"))
    await transport.wait_for_requests("tools/call", 1)
    await runtime.cancel()

    with pytest.raises(Cancelled):
        await run_task

    assert client.state == ClientState.CLOSED
    assert client.pending_count == 0
    assert transport.shutdown_called
    assert runtime.clients == []

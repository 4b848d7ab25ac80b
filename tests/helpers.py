"""
Shared test helpers: scripted LLMs and an in-memory MCP transport.
"""

import asyncio
from typing import Any, Callable

from mini_agent.errors import StreamClosed, WriteError
from mini_agent.llm.base import BaseLLM, LLMMessage, LLMResponse, ToolCall, ToolDefinition


def final(text: str) -> LLMResponse:
    """A final answer."""
    return LLMResponse(content=text, tool_calls=[], input_tokens=10, output_tokens=5)


def tool_calls(*calls: ToolCall, text: str = "") -> LLMResponse:
    """A response requesting tools."""
    return LLMResponse(content=text, tool_calls=list(calls), input_tokens=10, output_tokens=5)


class ScriptedLLM(BaseLLM):
    """Returns queued responses in order; exceptions in the queue are raised."""

    def __init__(self, responses: list[LLMResponse | Exception]):
        super().__init__(api_key="test", model="scripted")
        self.responses = list(responses)
        self.calls: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "scripted"

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "system_prompt": system_prompt})
        if not self.responses:
            raise AssertionError("ScriptedLLM ran out of responses")
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FunctionLLM(BaseLLM):
    """Delegates every call to ``handler(messages, system_prompt)``."""

    def __init__(self, handler: Callable[[list[LLMMessage], str | None], LLMResponse]):
        super().__init__(api_key="test", model="function")
        self.handler = handler
        self.calls: list[dict[str, Any]] = []

    @property
    def provider_name(self) -> str:
        return "function"

    async def generate(
        self,
        messages: list[LLMMessage],
        tools: list[ToolDefinition] | None = None,
        system_prompt: str | None = None,
    ) -> LLMResponse:
        self.calls.append({"messages": list(messages), "tools": tools, "system_prompt": system_prompt})
        await asyncio.sleep(0)
        return self.handler(list(messages), system_prompt)


_EOF = object()


class FakeTransport:
    """In-memory transport; the test plays the server."""

    def __init__(self, auto_initialize: bool = True):
        self.auto_initialize = auto_initialize
        self.sent: list[dict[str, Any]] = []
        self.started = False
        self.shutdown_called = False
        self._incoming: asyncio.Queue = asyncio.Queue()

    @property
    def is_alive(self) -> bool:
        return self.started and not self.shutdown_called

    async def start(self) -> None:
        self.started = True

    async def send(self, message: dict[str, Any]) -> None:
        if self.shutdown_called:
            raise WriteError("fake transport closed")
        self.sent.append(message)
        if self.auto_initialize and message.get("method") == "initialize":
            self.respond(message["id"], {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0"},
            })

    async def receive(self) -> dict[str, Any]:
        item = await self._incoming.get()
        if item is _EOF:
            raise StreamClosed("fake stream closed")
        if isinstance(item, Exception):
            raise item
        return item

    async def shutdown(self) -> None:
        self.shutdown_called = True
        self._incoming.put_nowait(_EOF)

    # ── Server side ──

    def respond(self, request_id: int, result: Any) -> None:
        self._incoming.put_nowait({"jsonrpc": "2.0", "id": request_id, "result": result})

    def respond_error(self, request_id: int, code: int, message: str) -> None:
        self._incoming.put_nowait({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })

    def push(self, item: Any) -> None:
        self._incoming.put_nowait(item)

    def close_stream(self) -> None:
        self._incoming.put_nowait(_EOF)

    def requests(self, method: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("method") == method]

    async def wait_for_requests(self, method: str, count: int) -> list[dict[str, Any]]:
        for _ in range(1000):
            found = self.requests(method)
            if len(found) >= count:
                return found
            await asyncio.sleep(0)
        raise AssertionError(f"expected {count} {method} requests, saw {len(self.requests(method))}")


def text_result(text: str, is_error: bool = False) -> dict[str, Any]:
    return {"content": [{"type": "text", "text": text}], "isError": is_error}

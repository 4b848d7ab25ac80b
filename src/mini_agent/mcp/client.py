"""MCP client: handshake, discovery and concurrent tool calls over one transport."""

from __future__ import annotations

import asyncio
import itertools
import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

import structlog

from .. import __version__
from ..config import ToolServerConfig
from ..errors import (
    HandshakeError,
    MCPError,
    ProtocolError,
    SpawnError,
    StreamClosed,
    Timeout,
    ToolError,
    TransportLost,
    WriteError,
)
from ..tools.base import ToolDescriptor, ToolResult
from .transport import StdioTransport

logger = structlog.get_logger()

MCP_PROTOCOL_VERSION = "2024-11-05"

DEFAULT_INPUT_SCHEMA: dict[str, Any] = {"type": "object", "properties": {}}

# Stale entries kept for recognising late responses; the oldest are dropped beyond this.
MAX_STALE_REQUESTS = 256


class Transport(Protocol):
    """What MCPClient needs from a transport."""

    @property
    def is_alive(self) -> bool: ...

    async def start(self) -> None: ...

    async def send(self, message: dict[str, Any]) -> None: ...

    async def receive(self) -> dict[str, Any]: ...

    async def shutdown(self) -> None: ...


class ClientState(str, Enum):
    """Lifecycle of one MCP connection."""

    UNINITIALIZED = "uninitialized"
    HANDSHAKING = "handshaking"
    READY = "ready"
    CLOSED = "closed"


@dataclass
class PendingRequest:
    """A request waiting for its response.

    A stale entry stays in the table after its caller gave up (timeout or
    cancellation) so that a late response is recognised and dropped. Only
    the newest ``max_stale_requests`` stale entries are kept.
    """

    id: int
    method: str
    future: asyncio.Future[Any]
    stale: bool = False


class MCPClient:
    """
    One connection to one MCP tool server.

    A background reader task owns ``transport.receive()`` and resolves
    pending requests by id, so any number of ``invoke()`` calls may be in
    flight at once. Requests are written in issuance order; responses may
    come back in any order.

    Usage::

        async with MCPClient(config) as client:
            tools = await client.list_tools()
            result = await client.invoke("search", {"query": "mcp"})
    """

    def __init__(
        self,
        config: ToolServerConfig,
        transport: Transport | None = None,
        request_timeout: float = 60.0,
        handshake_timeout: float = 30.0,
        shutdown_grace: float = 5.0,
        max_consecutive_timeouts: int = 3,
        max_stale_requests: int = MAX_STALE_REQUESTS,
    ):
        self.config = config
        self.request_timeout = request_timeout
        self.handshake_timeout = handshake_timeout
        self.max_consecutive_timeouts = max_consecutive_timeouts
        self.max_stale_requests = max_stale_requests
        self._transport: Transport = transport or StdioTransport(config, shutdown_grace)
        self._state = ClientState.UNINITIALIZED
        self._ids = itertools.count(1)
        self._pending: dict[int, PendingRequest] = {}
        self._write_lock = asyncio.Lock()
        self._reader_task: asyncio.Task[None] | None = None
        self._tools: list[ToolDescriptor] = []
        self._consecutive_timeouts = 0
        self._shut_down = False
        self.server_info: dict[str, Any] = {}

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def tools(self) -> list[ToolDescriptor]:
        """Descriptors from the latest discovery."""
        return list(self._tools)

    @property
    def pending_count(self) -> int:
        """Requests still waiting for a caller-visible answer."""
        return sum(1 for p in self._pending.values() if not p.stale)

    async def __aenter__(self) -> "MCPClient":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Start the server and perform the initialize handshake.

        Raises:
            SpawnError: the server process could not be started.
            HandshakeError: the initialize exchange failed or timed out.
        """
        if self._state is not ClientState.UNINITIALIZED:
            raise HandshakeError(
                f"Cannot connect MCP client '{self.name}' in state {self._state.value}",
                server=self.name,
            )

        self._state = ClientState.HANDSHAKING
        try:
            await self._transport.start()
        except SpawnError:
            self._state = ClientState.CLOSED
            self._shut_down = True
            raise

        self._reader_task = asyncio.create_task(self._read_loop(), name=f"mcp-reader-{self.name}")

        try:
            result = await self._request(
                "initialize",
                {
                    "protocolVersion": MCP_PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "mini-agent", "version": __version__},
                },
                timeout=self.handshake_timeout,
            )
            if not isinstance(result, dict) or "protocolVersion" not in result:
                raise ProtocolError(f"Malformed initialize response: {result!r}", server=self.name)
            await self._notify("notifications/initialized", {})
        except MCPError as e:
            logger.error("MCP handshake failed", server=self.name, error=str(e))
            await self._shutdown(TransportLost(f"Handshake with '{self.name}' failed", server=self.name))
            raise HandshakeError(f"MCP handshake with '{self.name}' failed: {e}", server=self.name) from e
        except asyncio.CancelledError:
            await self.close()
            raise

        self.server_info = result.get("serverInfo") or {}
        self._state = ClientState.READY
        logger.info(
            "MCP server initialized",
            server=self.name,
            protocol_version=result.get("protocolVersion"),
            server_info=self.server_info,
        )

    async def close(self, error: Exception | None = None) -> None:
        """Shut the transport down and fail every outstanding request.

        ``error`` is what pending callers receive; it defaults to TransportLost.
        """
        await self._shutdown(
            error or TransportLost(f"MCP client '{self.name}' was closed", server=self.name)
        )

    async def _shutdown(self, error: Exception) -> None:
        self._state = ClientState.CLOSED
        self._fail_pending(error)

        task, self._reader_task = self._reader_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                if not task.cancelled():
                    raise

        await self._transport.shutdown()

        if not self._shut_down:
            self._shut_down = True
            logger.info("MCP client closed", server=self.name, reason=str(error))

    # ── MCP methods ───────────────────────────────────────────────────────

    async def list_tools(self) -> list[ToolDescriptor]:
        """Discover the server's tools, replacing any earlier discovery."""
        self._require_ready("tools/list")

        tools: list[ToolDescriptor] = []
        params: dict[str, Any] = {}
        while True:
            result = await self._request("tools/list", params)
            page, cursor = parse_tool_list(result, self.name)
            tools.extend(page)
            if not cursor:
                break
            params = {"cursor": cursor}

        self._tools = tools
        logger.info("MCP tools discovered", server=self.name, count=len(tools))
        return list(tools)

    async def invoke(
        self,
        tool_name: str,
        arguments: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Call one tool and wait for its result.

        Raises:
            TransportLost: the server died or the client is closed.
            Timeout: no response within ``timeout`` seconds.
            ToolError: the server answered with a JSON-RPC error object.
            ProtocolError: the response could not be interpreted.
        """
        self._require_ready("tools/call")
        result = await self._request(
            "tools/call",
            {"name": tool_name, "arguments": arguments or {}},
            timeout=timeout,
        )
        return parse_call_result(result, self.name)

    # ── JSON-RPC plumbing ─────────────────────────────────────────────────

    def _require_ready(self, method: str) -> None:
        if self._state is ClientState.CLOSED:
            raise TransportLost(f"MCP client '{self.name}' is closed", server=self.name)
        if self._state is not ClientState.READY:
            raise ProtocolError(
                f"Cannot send '{method}' before the handshake completes", server=self.name
            )

    async def _request(
        self,
        method: str,
        params: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> Any:
        if self._state is ClientState.CLOSED:
            raise TransportLost(f"MCP client '{self.name}' is closed", server=self.name)

        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        pending = PendingRequest(id=request_id, method=method, future=future)
        self._pending[request_id] = pending

        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}
        if params is not None:
            message["params"] = params

        try:
            async with self._write_lock:
                await self._transport.send(message)
        except BaseException:
            self._pending.pop(request_id, None)
            raise

        timeout = self.request_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(future), timeout=timeout)
        except asyncio.TimeoutError:
            if future.done() and not future.cancelled() and future.exception() is None:
                return future.result()
            self._mark_stale(pending)
            logger.warning(
                "MCP request timed out",
                server=self.name,
                method=method,
                request_id=request_id,
                timeout=timeout,
            )
            await self._on_timeout()
            raise Timeout(
                f"MCP request '{method}' to '{self.name}' timed out after {timeout}s",
                server=self.name,
            ) from None
        except asyncio.CancelledError:
            self._mark_stale(pending)
            future.cancel()
            raise

    def _mark_stale(self, pending: PendingRequest) -> None:
        pending.stale = True
        stale_ids = [rid for rid, entry in self._pending.items() if entry.stale]
        for rid in stale_ids[: max(0, len(stale_ids) - self.max_stale_requests)]:
            del self._pending[rid]
            logger.debug("Forgetting stale MCP request", server=self.name, request_id=rid)

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        async with self._write_lock:
            await self._transport.send({"jsonrpc": "2.0", "method": method, "params": params})

    async def _on_timeout(self) -> None:
        self._consecutive_timeouts += 1
        if self.max_consecutive_timeouts and self._consecutive_timeouts >= self.max_consecutive_timeouts:
            logger.error(
                "MCP server went silent, closing",
                server=self.name,
                consecutive_timeouts=self._consecutive_timeouts,
            )
            await self._shutdown(
                TransportLost(f"MCP server '{self.name}' stopped responding", server=self.name)
            )

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for entry in pending.values():
            if not entry.stale and not entry.future.done():
                entry.future.set_exception(error)

    async def _read_loop(self) -> None:
        try:
            while True:
                try:
                    message = await self._transport.receive()
                except ProtocolError as e:
                    logger.warning("Discarding malformed MCP message", server=self.name, error=str(e))
                    continue
                self._consecutive_timeouts = 0
                self._dispatch(message)
        except StreamClosed:
            logger.warning(
                "MCP server closed its output",
                server=self.name,
                pending=self.pending_count,
            )
        except Exception as e:
            logger.exception("MCP reader failed", server=self.name, error=str(e))
        finally:
            self._state = ClientState.CLOSED
            self._fail_pending(
                TransportLost(f"MCP server '{self.name}' exited", server=self.name)
            )

        await self._transport.shutdown()

    def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" in message:
            # Notifications and server-initiated requests are outside the contract.
            logger.debug("Ignoring MCP server message", server=self.name, method=message.get("method"))
            return

        request_id = message.get("id")
        pending = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        if pending is None:
            logger.warning("MCP response for unknown request", server=self.name, request_id=request_id)
            return

        if pending.stale or pending.future.done():
            logger.debug(
                "Discarding late MCP response",
                server=self.name,
                request_id=request_id,
                method=pending.method,
            )
            return

        if "error" in message:
            pending.future.set_exception(_error_from_wire(message["error"], self.name))
        elif "result" in message:
            pending.future.set_result(message["result"])
        else:
            pending.future.set_exception(
                ProtocolError(f"Response {request_id} has neither result nor error", server=self.name)
            )


def _error_from_wire(error: Any, server: str) -> ToolError:
    if isinstance(error, dict):
        return ToolError(
            str(error.get("message", "unknown error")),
            code=error.get("code"),
            data=error.get("data"),
            server=server,
        )
    return ToolError(str(error), server=server)


def parse_tool_list(result: Any, server: str) -> tuple[list[ToolDescriptor], str | None]:
    """Decode one ``tools/list`` page into descriptors and the next cursor."""
    if not isinstance(result, dict) or not isinstance(result.get("tools"), list):
        raise ProtocolError("MCP tools/list response missing tools", server=server)

    descriptors = []
    for raw in result["tools"]:
        if not isinstance(raw, dict):
            raise ProtocolError(f"MCP tool entry is not an object: {raw!r}", server=server)
        name = raw.get("name")
        if not isinstance(name, str) or not name:
            logger.warning("Skipping MCP tool without a name", server=server)
            continue
        description = raw.get("description")
        input_schema = raw.get("inputSchema")
        descriptors.append(ToolDescriptor(
            name=name,
            description=description if isinstance(description, str) else "",
            input_schema=input_schema if isinstance(input_schema, dict) else dict(DEFAULT_INPUT_SCHEMA),
            source=server,
        ))

    cursor = result.get("nextCursor")
    return descriptors, cursor if isinstance(cursor, str) and cursor else None


def parse_call_result(result: Any, server: str) -> ToolResult:
    """Decode a ``tools/call`` result; text content items are joined by newlines."""
    if not isinstance(result, dict):
        raise ProtocolError(f"MCP tools/call result is not an object: {result!r}", server=server)

    is_error = bool(result.get("isError", False))
    content = result.get("content")

    texts = []
    if isinstance(content, list):
        for item in content:
            if isinstance(item, dict) and item.get("type") == "text" and isinstance(item.get("text"), str):
                texts.append(item["text"])

    joined = "\n".join(texts) if texts else json.dumps(result, indent=2)

    if is_error:
        return ToolResult(success=False, error=joined, data=result)
    return ToolResult(success=True, output=joined, data=result)

"""MCP server communication via stdio subprocess transport."""

from __future__ import annotations

import asyncio
import contextlib
import json
import os
from typing import Any

import structlog

from ..config import ToolServerConfig
from ..errors import ProtocolError, SpawnError, StreamClosed, WriteError

logger = structlog.get_logger()

# Large tool results (screenshots, file dumps) arrive as a single line.
STREAM_LIMIT = 16 * 1024 * 1024


def encode_message(message: dict[str, Any]) -> bytes:
    """Frame one message as a newline-terminated JSON line."""
    return (json.dumps(message, separators=(",", ":")) + "\n").encode("utf-8")


def decode_message(line: bytes) -> dict[str, Any]:
    """Parse one framed line; anything but a JSON object is a ProtocolError."""
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Unparseable message: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(message).__name__}")
    return message


class StdioTransport:
    """
    Owns one tool-server process and its stdin/stdout pipes.

    Messages are JSON objects, one per line. ``receive()`` raises
    ``StreamClosed`` at end of file and ``ProtocolError`` for a line that is
    not a JSON object; the latter leaves the transport usable.
    """

    def __init__(self, config: ToolServerConfig, shutdown_grace: float = 5.0):
        self.config = config
        self.shutdown_grace = shutdown_grace
        self._process: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_alive(self) -> bool:
        return (
            not self._closed
            and self._process is not None
            and self._process.returncode is None
        )

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def start(self) -> None:
        """Spawn the tool-server subprocess."""
        if self._process is not None:
            return

        env = {**os.environ, **self.config.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command,
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=STREAM_LIMIT,
            )
        except OSError as e:
            self._closed = True
            raise SpawnError(
                f"Failed to spawn MCP server '{self.name}' with command '{self.config.command}': {e}",
                server=self.name,
            ) from e

        self._stderr_task = asyncio.create_task(
            self._drain_stderr(), name=f"mcp-stderr-{self.name}"
        )
        logger.info(
            "MCP server started",
            server=self.name,
            command=self.config.command,
            pid=self._process.pid,
        )

    async def shutdown(self) -> None:
        """Close stdin, ask the process to exit, then kill it after the grace period."""
        if self._closed and self._process is None:
            return
        self._closed = True

        process = self._process
        if process is not None:
            if process.stdin and not process.stdin.is_closing():
                process.stdin.close()

            if process.returncode is None:
                with contextlib.suppress(ProcessLookupError):
                    process.terminate()
                try:
                    await asyncio.wait_for(process.wait(), timeout=self.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.warning("MCP server did not terminate, killing", server=self.name)
                    with contextlib.suppress(ProcessLookupError):
                        process.kill()
                    await process.wait()

            logger.info("MCP server stopped", server=self.name, returncode=process.returncode)

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._stderr_task
            self._stderr_task = None

        self._process = None

    # ── Framing ───────────────────────────────────────────────────────────

    async def send(self, message: dict[str, Any]) -> None:
        """Write one framed message."""
        process = self._process
        if self._closed or process is None or process.stdin is None or process.stdin.is_closing():
            raise WriteError(f"MCP server '{self.name}' input is closed", server=self.name)

        try:
            process.stdin.write(encode_message(message))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            raise WriteError(f"MCP write failed (server: {self.name}): {e}", server=self.name) from e

    async def receive(self) -> dict[str, Any]:
        """Block until one framed message arrives."""
        process = self._process
        if process is None or process.stdout is None:
            raise StreamClosed(f"MCP server '{self.name}' is not running", server=self.name)

        while True:
            try:
                line = await process.stdout.readline()
            except ValueError as e:
                # Line longer than STREAM_LIMIT; the reader already discarded it.
                raise ProtocolError(f"Oversized message: {e}", server=self.name) from e

            if not line:
                raise StreamClosed(f"MCP server '{self.name}' closed stdout", server=self.name)

            if not line.strip():
                continue

            try:
                return decode_message(line)
            except ProtocolError as e:
                e.server = self.name
                raise

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            try:
                line = await process.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            logger.debug(
                "MCP server stderr",
                server=self.name,
                line=line.decode("utf-8", errors="replace").rstrip(),
            )

"""
Shell Command Tool - the built-in ``bash`` tool.

Runs a command through ``bash -c`` with a timeout and output limits.
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path

import structlog

from .base import Tool, ToolParameter, ToolResult

logger = structlog.get_logger()


@dataclass
class ShellConfig:
    """Configuration for shell command execution."""

    timeout_seconds: int = 30
    max_output_lines: int = 200
    max_output_chars: int = 10000
    working_dir: str | None = None


class ShellExecutor:
    """Executes shell commands with a timeout and bounded output."""

    def __init__(self, config: ShellConfig | None = None):
        self.config = config or ShellConfig()
        self.working_dir = Path(self.config.working_dir or os.getcwd()).expanduser()

    async def execute(self, command: str) -> tuple[int, str, str]:
        """
        Execute a shell command.

        Returns:
            Tuple of (return_code, stdout, stderr)
        """
        if not command.strip():
            return -1, "", "Empty command"

        process = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.working_dir),
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self.config.timeout_seconds,
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return -1, "", f"Command timed out after {self.config.timeout_seconds} seconds"
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        stdout_str = self._truncate_output(stdout.decode("utf-8", errors="replace"))
        stderr_str = self._truncate_output(stderr.decode("utf-8", errors="replace"))

        return process.returncode, stdout_str, stderr_str

    def _truncate_output(self, output: str) -> str:
        """Truncate output to configured limits."""
        lines = output.split("\n")

        if len(lines) > self.config.max_output_lines:
            lines = lines[:self.config.max_output_lines]
            output = "\n".join(lines) + f"\n\n... (truncated, {len(lines)} lines shown)"

        if len(output) > self.config.max_output_chars:
            output = output[:self.config.max_output_chars] + "\n\n... (truncated)"

        return output


def create_shell_tool(config: ShellConfig | None = None) -> Tool:
    """Create the ``bash`` tool."""
    executor = ShellExecutor(config)

    async def bash_handler(command: str) -> ToolResult:
        return_code, stdout, stderr = await executor.execute(command)
        logger.debug("Shell command finished", return_code=return_code)

        if return_code == 0:
            return ToolResult(success=True, output=stdout, data={"return_code": 0})

        return ToolResult(
            success=False,
            output=stdout,
            data={"return_code": return_code},
            error=f"{stderr}\nStdout: {stdout}" if stdout else stderr or f"Exit code {return_code}",
        )

    return Tool(
        tool_name="bash",
        description="Execute a bash command",
        parameters=[
            ToolParameter(
                name="command",
                param_type="string",
                description="The command to execute",
                required=True,
            ),
        ],
        handler=bash_handler,
    )

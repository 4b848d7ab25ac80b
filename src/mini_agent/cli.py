"""
Command-line interface for Mini-Agent.
"""

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from pathlib import Path

import structlog

from .agent import AgentRuntime, SessionManager
from .config import Settings, get_settings, load_server_configs
from .errors import AgentError, Cancelled

logger = structlog.get_logger()

HELP_TEXT = """Commands:
  /save [title]   Save the conversation
  /load <id>      Load a saved conversation
  /list           List saved conversations
  /delete <id>    Delete a saved conversation
  /clear          Start a new conversation
  /tools          List available tools
  /help           Show this help
  /quit           Exit"""


def configure_logging(level: str = "INFO") -> None:
    """Route structlog through stdlib logging on stderr."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="mini-agent",
        description="Mini-Agent - a tool-using AI agent with MCP servers and subagents",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Start an interactive session (default)")
    chat_parser.add_argument("-p", "--prompt", help="Run a single prompt and exit")
    chat_parser.add_argument("--session", help="Resume a saved session by id")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create .env and mcp.json templates")

    args = parser.parse_args()
    settings = get_settings()
    configure_logging(args.log_level or ("DEBUG" if settings.debug else settings.log_level))

    if args.command in (None, "chat"):
        prompt = getattr(args, "prompt", None)
        session_id = getattr(args, "session", None)
        sys.exit(asyncio.run(chat(settings, prompt=prompt, session_id=session_id)))
    elif args.command == "config":
        sys.exit(show_config(settings, args.check))
    elif args.command == "init":
        init_project()
    else:
        parser.print_help()


async def chat(settings: Settings, prompt: str | None = None, session_id: str | None = None) -> int:
    """Run the REPL, or a single prompt when ``prompt`` is given."""
    sessions = await SessionManager.create(settings.session_database_url)
    runtime = AgentRuntime(settings)

    try:
        await runtime.start()

        if session_id and not await sessions.load(session_id, runtime.agent.context):
            print(f"Session {session_id} not found.")
            return 1

        if prompt is not None:
            return await run_turn(runtime, prompt)

        print(f"{settings.app_name} ready with {len(runtime.agent.tool_catalog())} tools. Type /help for commands.")
        current_session = session_id

        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                print()
                break

            line = line.strip()
            if not line:
                continue

            if line.startswith("/"):
                command, _, arg = line.partition(" ")
                arg = arg.strip()

                if command in ("/quit", "/exit"):
                    break
                elif command == "/help":
                    print(HELP_TEXT)
                elif command == "/tools":
                    for definition in runtime.agent.tool_catalog():
                        print(f"  {definition.name}: {definition.description}")
                elif command == "/clear":
                    runtime.reset()
                    current_session = None
                    print("Started a new conversation.")
                elif command == "/save":
                    current_session = await sessions.save(
                        runtime.agent.context, session_id=current_session, title=arg or None
                    )
                    print(f"Saved session {current_session}")
                elif command == "/load":
                    if not arg:
                        print("Usage: /load <id>")
                    elif await sessions.load(arg, runtime.agent.context):
                        current_session = arg
                        print(f"Loaded session {arg}")
                    else:
                        print(f"Session {arg} not found.")
                elif command == "/list":
                    infos = await sessions.list_sessions()
                    if not infos:
                        print("No saved sessions.")
                    for info in infos:
                        updated = info.updated_at.strftime("%Y-%m-%d %H:%M:%S") if info.updated_at else "N/A"
                        print(f"  {info.id}  {updated}  {info.message_count:>4} msgs  {info.title or ''}")
                elif command == "/delete":
                    if arg and await sessions.delete(arg):
                        if current_session == arg:
                            current_session = None
                        print(f"Deleted session {arg}")
                    else:
                        print(f"Session {arg or '(none)'} not found.")
                else:
                    print(f"Unknown command: {command}. Type /help for commands.")
                continue

            status = await run_turn(runtime, line)
            if runtime.cancelled:
                return status

        return 0

    finally:
        await runtime.aclose()
        await sessions.close()


async def run_turn(runtime: AgentRuntime, text: str) -> int:
    """Run one turn; Ctrl+C cancels the session."""
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, lambda: asyncio.ensure_future(runtime.cancel()))

    try:
        result = await runtime.run(text)
    except Cancelled:
        print("\nCancelled.")
        return 130
    except AgentError as e:
        logger.error("Agent run failed", error=str(e), error_type=type(e).__name__)
        print(f"\nError: {e}")
        return 1
    finally:
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(signal.SIGINT)

    print(f"\n{result.content}")
    if not result.completed:
        print(f"\n[stopped: {result.error}]")
        return 2
    return 0


def show_config(settings: Settings, check: bool) -> int:
    """Show current configuration."""

    def mask(value: str) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    llm_config = settings.get_llm_config()

    print("\n=== Mini-Agent Configuration ===\n")

    print("LLM:")
    print(f"  Provider: {llm_config.provider}")
    print(f"  Model: {llm_config.model}")
    print(f"  Base URL: {llm_config.base_url or '(default)'}")
    print(f"  Anthropic Key: {mask(settings.anthropic_api_key)}")
    print(f"  OpenAI Key: {mask(settings.openai_api_key)}")
    print(f"  OpenRouter Key: {mask(settings.openrouter_api_key)}")

    print("\nTools:")
    print(f"  Shell Tool: {settings.enable_shell_tool}")
    print(f"  MCP: {settings.enable_mcp} ({settings.mcp_config_path})")
    print(f"  Tool Timeout: {settings.tool_timeout_seconds}s")

    print("\nContext:")
    print(f"  Budget: {settings.compression_budget} {settings.compression_metric}")
    print(f"  Keep Recent: {settings.keep_recent_messages}")
    print(f"  Max Turns: {settings.max_turns}")
    print(f"  Max Subagent Depth: {settings.max_subagent_depth}")

    print("\nDatabase:")
    print(f"  URL: {settings.session_database_url}")

    if not check:
        return 0

    print("\n=== Configuration Check ===\n")
    errors = []

    if not llm_config.api_key:
        errors.append(f"No API key set for provider '{llm_config.provider}'")

    if settings.enable_mcp:
        try:
            servers = load_server_configs(settings.mcp_config_path)
            print(f"MCP servers: {', '.join(s.name for s in servers) or '(none)'}")
        except ValueError as e:
            errors.append(str(e))

    if errors:
        print("Errors:")
        for e in errors:
            print(f"   - {e}")
        return 1

    print("Configuration looks good!")
    return 0


def init_project() -> None:
    """Create starter configuration files."""
    env_file = Path(".env")
    mcp_file = Path("mcp.json")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# Mini-Agent Configuration

# LLM API Keys (set at least one)
ANTHROPIC_API_KEY=
# OPENAI_API_KEY=
# OPENROUTER_API_KEY=

# Default LLM provider and model
DEFAULT_PROVIDER=anthropic
# DEFAULT_MODEL=claude-sonnet-4-20250514

# Tools
ENABLE_SHELL_TOOL=true
ENABLE_MCP=true
MCP_CONFIG_PATH=mcp.json
TOOL_TIMEOUT_SECONDS=60

# Context
COMPRESSION_METRIC=tokens
COMPRESSION_BUDGET=8192
KEEP_RECENT_MESSAGES=4
MAX_TURNS=50
MAX_SUBAGENT_DEPTH=2

# Database
SESSION_DATABASE_URL=sqlite+aiosqlite:///./data/sessions.db
"""
        env_file.write_text(env_content)
        print(f"Created {env_file}")
    else:
        print(f"{env_file} already exists")

    if not mcp_file.exists():
        example = {
            "servers": [
                {
                    "name": "filesystem",
                    "command": "npx",
                    "args": ["-y", "@modelcontextprotocol/server-filesystem", "."],
                    "env": {},
                }
            ]
        }
        mcp_file.write_text(json.dumps(example, indent=2) + "\n")
        print(f"Created {mcp_file}")
    else:
        print(f"{mcp_file} already exists")

    print(f"Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and add an LLM API key")
    print("2. List your MCP servers in mcp.json")
    print("3. Run: mini-agent chat")


if __name__ == "__main__":
    main()

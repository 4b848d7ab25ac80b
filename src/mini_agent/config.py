"""
Configuration management for Mini-Agent

Uses pydantic-settings for environment variable parsing and validation.
The core runtime never reads these itself; the CLI and AgentRuntime pass
the values down as constructor parameters.
"""

import json
from functools import lru_cache
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = structlog.get_logger()


class LLMConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    temperature: float = 0.7


class ToolServerConfig(BaseModel):
    """How to launch one MCP tool server."""

    model_config = ConfigDict(frozen=True)

    name: str
    command: str
    args: tuple[str, ...] = ()
    env: dict[str, str] = Field(default_factory=dict)

    @field_validator("name", "command")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be empty")
        return v


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "Mini-Agent"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    openrouter_api_key: str = Field(default="", description="OpenRouter API key")

    # Default model settings
    default_provider: Literal["anthropic", "openai", "openrouter"] = "anthropic"
    default_model: str = ""
    llm_base_url: str | None = Field(default=None, description="Override the provider endpoint")
    max_tokens: int = 4096
    temperature: float = 0.7
    model_retry_attempts: int = Field(default=3, description="Retries when the backend rate limits")
    model_retry_base_delay: float = Field(default=1.0, description="First backoff delay in seconds")

    # MCP tool servers
    enable_mcp: bool = True
    mcp_config_path: str = Field(default="mcp.json", description="JSON file listing tool servers")
    tool_timeout_seconds: float = Field(default=60.0, description="Per-invocation timeout")
    handshake_timeout_seconds: float = Field(default=30.0, description="Initialize exchange timeout")
    shutdown_grace_seconds: float = Field(default=5.0, description="Wait before killing a server")
    max_consecutive_timeouts: int = Field(
        default=3, description="Timeouts with no reply in between before a server counts as silent"
    )

    # Native tools
    enable_shell_tool: bool = True
    shell_timeout_seconds: int = 30

    # Context
    compression_metric: Literal["tokens", "messages"] = "tokens"
    compression_budget: int = Field(default=8192, description="Size budget in units of the metric")
    keep_recent_messages: int = Field(default=4, description="Messages never summarized away")

    # Agent loop
    max_turns: int = Field(default=50, description="Model calls per run before giving up")
    max_subagent_depth: int = Field(default=2, description="Nested delegation limit")

    # Sessions
    session_database_url: str = Field(
        default="sqlite+aiosqlite:///./data/sessions.db",
        description="Database connection URL for saved sessions",
    )

    @field_validator("keep_recent_messages")
    @classmethod
    def keep_recent_non_negative(cls, v: int) -> int:
        if v < 0:
            raise ValueError("keep_recent_messages must be >= 0")
        return v

    def get_llm_config(self, provider: str | None = None) -> LLMConfig:
        """Get LLM configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "openrouter": self.openrouter_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "openrouter": "anthropic/claude-sonnet-4",
        }

        base_url_map = {
            "anthropic": None,
            "openai": None,
            "openrouter": "https://openrouter.ai/api/v1",
        }

        return LLMConfig(
            provider=provider,  # type: ignore
            model=self.default_model or model_map.get(provider, ""),
            api_key=api_key_map.get(provider, ""),
            base_url=self.llm_base_url or base_url_map.get(provider),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
        )


def load_server_configs(path: str | Path) -> list[ToolServerConfig]:
    """Read the tool-server list from a JSON file.

    The file looks like ``{"servers": [{"name": ..., "command": ...}]}``.
    A missing file means no servers. Duplicate names keep the first entry.
    """
    path = Path(path)
    if not path.exists():
        logger.info("MCP config not found", path=str(path))
        return []

    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid MCP config JSON: {path}: {e}") from e

    configs: list[ToolServerConfig] = []
    seen: set[str] = set()
    for raw in data.get("servers", []):
        try:
            config = ToolServerConfig.model_validate(raw)
        except ValidationError as e:
            raise ValueError(f"Invalid MCP server entry in {path}: {e}") from e
        if config.name in seen:
            logger.warning("Duplicate MCP server name ignored", server=config.name)
            continue
        seen.add(config.name)
        configs.append(config)
    return configs


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

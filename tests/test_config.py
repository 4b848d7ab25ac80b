"""
Tests for configuration module.
"""

import json
import os
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from mini_agent.config import Settings, ToolServerConfig, load_server_configs


def test_settings_default_values():
    """Test that settings have sensible defaults."""
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.app_name == "Mini-Agent"
        assert settings.default_provider == "anthropic"
        assert settings.enable_mcp is True
        assert settings.compression_metric == "tokens"
        assert settings.keep_recent_messages == 4
        assert settings.max_subagent_depth == 2
        assert settings.max_consecutive_timeouts == 3


def test_settings_from_env():
    """Test loading settings from environment variables."""
    env = {
        "ANTHROPIC_API_KEY": "test_anthropic_key",
        "DEFAULT_MODEL": "claude-opus-4",
        "ENABLE_MCP": "false",
        "COMPRESSION_METRIC": "messages",
        "COMPRESSION_BUDGET": "40",
        "TOOL_TIMEOUT_SECONDS": "2.5",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)

        assert settings.anthropic_api_key == "test_anthropic_key"
        assert settings.default_model == "claude-opus-4"
        assert settings.enable_mcp is False
        assert settings.compression_metric == "messages"
        assert settings.compression_budget == 40
        assert settings.tool_timeout_seconds == 2.5


def test_invalid_settings_rejected():
    """Test unknown metrics and negative windows fail validation."""
    with patch.dict(os.environ, {"COMPRESSION_METRIC": "bytes"}, clear=True):
        with pytest.raises(ValidationError):
            Settings(_env_file=None)

    with patch.dict(os.environ, {"KEEP_RECENT_MESSAGES": "-1"}, clear=True):
        with pytest.raises(ValidationError):
            Settings(_env_file=None)


def test_get_llm_config():
    """Test getting LLM configuration."""
    env = {
        "ANTHROPIC_API_KEY": "test_key",
        "DEFAULT_PROVIDER": "anthropic",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings(_env_file=None)
        config = settings.get_llm_config()

        assert config.provider == "anthropic"
        assert config.api_key == "test_key"
        assert "claude" in config.model.lower()


def test_get_llm_config_openrouter():
    """Test OpenRouter gets its base URL unless overridden."""
    with patch.dict(os.environ, {"OPENROUTER_API_KEY": "or_key"}, clear=True):
        settings = Settings(_env_file=None)
        config = settings.get_llm_config("openrouter")

        assert config.api_key == "or_key"
        assert config.base_url == "https://openrouter.ai/api/v1"

    with patch.dict(os.environ, {"LLM_BASE_URL": "http://localhost:9000/v1"}, clear=True):
        settings = Settings(_env_file=None)

        assert settings.get_llm_config("openrouter").base_url == "http://localhost:9000/v1"


def test_load_server_configs_missing_file(tmp_path):
    """Test a missing config file means no servers."""
    assert load_server_configs(tmp_path / "mcp.json") == []


def test_load_server_configs(tmp_path):
    """Test servers are read in order and duplicates keep the first entry."""
    path = tmp_path / "mcp.json"
    path.write_text(json.dumps({
        "servers": [
            {"name": "files", "command": "mcp-files", "args": ["--root", "."]},
            {"name": "search", "command": "mcp-search", "env": {"API_KEY": "k"}},
            {"name": "files", "command": "other"},
        ]
    }))

    configs = load_server_configs(path)

    assert [c.name for c in configs] == ["files", "search"]
    assert configs[0].args == ("--root", ".")
    assert configs[0].command == "mcp-files"
    assert configs[1].env == {"API_KEY": "k"}


def test_load_server_configs_invalid(tmp_path):
    """Test broken JSON and bad entries raise ValueError."""
    path = tmp_path / "mcp.json"

    path.write_text("{not json")
    with pytest.raises(ValueError):
        load_server_configs(path)

    path.write_text(json.dumps({"servers": [{"name": "no-command"}]}))
    with pytest.raises(ValueError):
        load_server_configs(path)


def test_tool_server_config_rejects_blank_fields():
    """Test name and command must not be blank."""
    with pytest.raises(ValidationError):
        ToolServerConfig(name=" ", command="x")
    with pytest.raises(ValidationError):
        ToolServerConfig(name="x", command="")

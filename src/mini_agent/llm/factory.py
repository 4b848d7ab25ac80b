"""
Build the model backend named by the configuration.
"""

from ..config import LLMConfig, Settings
from .anthropic import AnthropicLLM
from .base import BaseLLM
from .openai import OpenAILLM

OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

# provider -> (backend class, endpoint used when none is configured)
PROVIDERS: dict[str, tuple[type[BaseLLM], str | None]] = {
    "anthropic": (AnthropicLLM, None),
    "openai": (OpenAILLM, None),
    "openrouter": (OpenAILLM, OPENROUTER_BASE_URL),
}


def create_llm(config: LLMConfig | None = None, settings: Settings | None = None) -> BaseLLM:
    """Instantiate the backend for ``config.provider``.

    Falls back to the process settings when no config is given. OpenRouter
    speaks the OpenAI wire format, so it shares that backend.

    Raises:
        ValueError: the provider is not one we know how to talk to.
    """
    if config is None:
        if settings is None:
            from ..config import get_settings
            settings = get_settings()
        config = settings.get_llm_config()

    try:
        backend, default_url = PROVIDERS[config.provider]
    except KeyError:
        raise ValueError(f"Unknown LLM provider: {config.provider}") from None

    return backend(
        api_key=config.api_key,
        model=config.model,
        base_url=config.base_url or default_url,
        max_tokens=config.max_tokens,
        temperature=config.temperature,
    )

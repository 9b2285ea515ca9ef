"""LLM providers for session assessment.

Supported providers:
- Ollama (local, no API key)
- Claude via the Anthropic SDK
- OpenAI via the OpenAI SDK

Usage:
    from aiobscura.assessment.providers import create_provider

    provider = create_provider(settings.llm)
    response = provider.complete(system_prompt="...", user_prompt="...")
"""

import logging
import os

from aiobscura.assessment.providers.base import LLMProvider, LLMResponse
from aiobscura.config import LLMProviderType, LLMSettings
from aiobscura.exceptions import ConfigError

logger = logging.getLogger(__name__)

API_KEY_ENV = {
    LLMProviderType.CLAUDE: "ANTHROPIC_API_KEY",
    LLMProviderType.OPENAI: "OPENAI_API_KEY",
}


def resolve_api_key(settings: LLMSettings) -> str | None:
    """Configured key, else the provider's conventional environment variable."""
    if settings.api_key:
        return settings.api_key
    env_var = API_KEY_ENV.get(settings.provider)
    return os.getenv(env_var) if env_var else None


def create_provider(settings: LLMSettings) -> LLMProvider:
    """Factory for the provider named in ``[llm]``.

    Raises:
        ConfigError: If a hosted provider has no API key
    """
    timeout = float(max(settings.timeout_secs, 1))

    if settings.provider == LLMProviderType.OLLAMA:
        from aiobscura.assessment.providers.ollama_provider import OllamaProvider

        return OllamaProvider(
            model=settings.model, endpoint=settings.resolved_endpoint, timeout=timeout
        )

    api_key = resolve_api_key(settings)
    if not api_key:
        raise ConfigError(
            f"llm.api_key (or {API_KEY_ENV[settings.provider]}) is required "
            f"for the {settings.provider.value} provider"
        )

    if settings.provider == LLMProviderType.CLAUDE:
        from aiobscura.assessment.providers.anthropic_provider import AnthropicProvider

        return AnthropicProvider(
            api_key=api_key,
            model=settings.model,
            base_url=settings.resolved_endpoint,
            timeout=timeout,
        )

    from aiobscura.assessment.providers.openai_provider import OpenAIProvider

    return OpenAIProvider(
        api_key=api_key,
        model=settings.model,
        base_url=f"{settings.resolved_endpoint}/v1",
        timeout=timeout,
    )


__all__ = [
    "LLMProvider",
    "LLMResponse",
    "create_provider",
    "resolve_api_key",
]

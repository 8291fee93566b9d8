"""
Factory for creating provider instances and a configured resolver.

Supports: Anthropic Claude, OpenAI GPT (Chat Completions and Responses),
Google Gemini.
"""

import httpx
import structlog

from ..config import ProviderConfig, Settings, get_settings
from ..errors import ProviderConfigurationError
from .anthropic import AnthropicProvider
from .base import BaseProvider
from .google import GeminiProvider
from .openai import OpenAIProvider
from .resolver import ProviderResolver

logger = structlog.get_logger()


def create_provider(
    provider: str | None = None,
    settings: Settings | None = None,
    config: ProviderConfig | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> BaseProvider:
    """Create a provider from configuration.

    Raises ProviderConfigurationError for unknown providers or missing
    credentials.
    """
    settings = settings or get_settings()
    config = config or settings.get_provider_config(provider)

    common = {
        "api_key": config.api_key or None,
        "base_url": config.base_url,
        "default_max_tokens": config.max_tokens,
        "timeout": config.timeout,
        "max_retries": config.max_retries,
        "http_client": http_client,
    }

    if config.provider == "anthropic":
        return AnthropicProvider(**common)
    elif config.provider == "openai":
        return OpenAIProvider(
            organization=settings.openai_organization or None,
            api=settings.openai_api,
            **common,
        )
    elif config.provider == "gemini":
        return GeminiProvider(**common)
    else:
        raise ProviderConfigurationError(f"Unknown LLM provider: {config.provider}")


def create_resolver(
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> ProviderResolver:
    """Build a resolver with every provider that has a credential configured."""
    settings = settings or get_settings()
    resolver = ProviderResolver()

    for provider_id in settings.configured_providers():
        resolver.register(create_provider(provider_id, settings=settings, http_client=http_client))

    if resolver.get(settings.default_provider) is not None:
        resolver.set_default_provider(settings.default_provider)
    else:
        logger.warning("Default provider has no credential configured", provider=settings.default_provider)

    return resolver

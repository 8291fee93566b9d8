"""
Configuration management for agentloop

Uses pydantic-settings for environment variable parsing and validation.
"""

from functools import lru_cache
from typing import TYPE_CHECKING, Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .session.compaction import CompactionConfig

ProviderId = Literal["anthropic", "openai", "gemini"]


class ProviderConfig(BaseSettings):
    """Configuration for a single LLM provider."""

    model_config = SettingsConfigDict(extra="ignore")

    provider: ProviderId = "anthropic"
    model: str = "claude-sonnet-4-20250514"
    api_key: str = ""
    base_url: str | None = None
    max_tokens: int = 4096
    timeout: float = 600.0
    max_retries: int = 2


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    # Application
    app_name: str = "agentloop"
    debug: bool = False
    log_level: str = "INFO"

    # LLM Providers (API Keys)
    anthropic_api_key: str = Field(default="", description="Anthropic API key for Claude")
    openai_api_key: str = Field(default="", description="OpenAI API key")
    gemini_api_key: str = Field(
        default="",
        description="Google AI API key for Gemini",
        validation_alias=AliasChoices("GEMINI_API_KEY", "GOOGLE_API_KEY", "gemini_api_key"),
    )

    # Provider endpoints
    anthropic_base_url: str | None = Field(default=None, description="Override for the Anthropic API URL")
    openai_base_url: str | None = Field(default=None, description="Override for the OpenAI API URL")
    openai_organization: str = Field(default="", description="OpenAI organization header")
    openai_api: Literal["auto", "chat", "responses"] = Field(
        default="auto", description="Force an OpenAI endpoint instead of picking by model"
    )
    gemini_base_url: str | None = Field(default=None, description="Override for the Gemini API URL")

    # Default model settings
    default_provider: ProviderId = "anthropic"
    default_model: str = "claude-sonnet-4-20250514"
    max_tokens: int = 4096
    request_timeout: float = Field(default=600.0, description="HTTP timeout in seconds")
    max_retries: int = Field(default=2, description="Retries for 429/5xx and connection errors")

    # Session
    max_turns: int | None = Field(default=None, description="Max assistant turns per session")

    # Compaction
    compaction_enabled: bool = True
    max_context_tokens: int = Field(default=100_000, description="Context budget for compaction")
    compaction_threshold: float = Field(default=0.8, description="Fraction of budget that triggers compaction")
    keep_recent_turns: int = Field(default=5, description="Turns kept verbatim by hard compaction")
    prune_minimum: int = Field(default=20_000, description="Smallest worthwhile prune, in tokens")
    prune_protect: int = Field(default=40_000, description="Recent tool output protected from pruning, in tokens")

    def get_provider_config(self, provider: str | None = None) -> ProviderConfig:
        """Get configuration for a provider."""
        provider = provider or self.default_provider

        api_key_map = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }

        model_map = {
            "anthropic": "claude-sonnet-4-20250514",
            "openai": "gpt-4o",
            "gemini": "gemini-2.5-flash",
        }

        base_url_map = {
            "anthropic": self.anthropic_base_url,
            "openai": self.openai_base_url,
            "gemini": self.gemini_base_url,
        }

        model = self.default_model if provider == self.default_provider else model_map.get(provider, self.default_model)

        return ProviderConfig(
            provider=provider,  # type: ignore
            model=model,
            api_key=api_key_map.get(provider, ""),
            base_url=base_url_map.get(provider),
            max_tokens=self.max_tokens,
            timeout=self.request_timeout,
            max_retries=self.max_retries,
        )

    def configured_providers(self) -> list[str]:
        """Providers with a credential set."""
        keys = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }
        return [name for name, key in keys.items() if key]

    def get_compaction_config(self) -> "CompactionConfig":
        from .session.compaction import CompactionConfig

        return CompactionConfig(
            enabled=self.compaction_enabled,
            max_context_tokens=self.max_context_tokens,
            compaction_threshold=self.compaction_threshold,
            keep_recent_turns=self.keep_recent_turns,
            prune_minimum=self.prune_minimum,
            prune_protect=self.prune_protect,
        )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()

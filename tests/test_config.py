"""
Tests for configuration module.
"""

import os
from unittest.mock import patch

import pytest

from agentloop.config import Settings
from agentloop.errors import ProviderConfigurationError
from agentloop.llm.anthropic import AnthropicProvider
from agentloop.llm.factory import create_provider, create_resolver
from agentloop.llm.google import GeminiProvider
from agentloop.llm.openai import OpenAIProvider


def test_settings_default_values():
    """Test that settings have sensible defaults."""
    with patch.dict(os.environ, {}, clear=True):
        settings = Settings()

        assert settings.app_name == "agentloop"
        assert settings.default_provider == "anthropic"
        assert settings.max_retries == 2
        assert settings.openai_api == "auto"
        assert settings.compaction_enabled is True
        assert settings.configured_providers() == []


def test_settings_from_env():
    """Test loading settings from environment variables."""
    env = {
        "ANTHROPIC_API_KEY": "test_anthropic_key",
        "DEFAULT_MODEL": "claude-opus-4",
        "MAX_RETRIES": "5",
        "OPENAI_API": "responses",
        "MAX_CONTEXT_TOKENS": "50000",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings()

        assert settings.anthropic_api_key == "test_anthropic_key"
        assert settings.default_model == "claude-opus-4"
        assert settings.max_retries == 5
        assert settings.openai_api == "responses"
        assert settings.max_context_tokens == 50000


def test_google_api_key_alias():
    """Test that GOOGLE_API_KEY fills the Gemini key."""
    with patch.dict(os.environ, {"GOOGLE_API_KEY": "g_key"}, clear=True):
        settings = Settings()

        assert settings.gemini_api_key == "g_key"
        assert settings.configured_providers() == ["gemini"]


def test_get_provider_config():
    """Test getting provider configuration."""
    env = {
        "ANTHROPIC_API_KEY": "test_key",
        "DEFAULT_PROVIDER": "anthropic",
        "REQUEST_TIMEOUT": "30",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings()
        config = settings.get_provider_config()

        assert config.provider == "anthropic"
        assert config.api_key == "test_key"
        assert "claude" in config.model.lower()
        assert config.timeout == 30.0


def test_get_provider_config_openai():
    """Test getting OpenAI configuration."""
    env = {
        "OPENAI_API_KEY": "test_openai_key",
        "OPENAI_BASE_URL": "http://localhost:8000/v1",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings()
        config = settings.get_provider_config("openai")

        assert config.provider == "openai"
        assert config.api_key == "test_openai_key"
        assert config.base_url == "http://localhost:8000/v1"
        assert "gpt" in config.model.lower()


def test_get_compaction_config():
    """Test that compaction settings map onto CompactionConfig."""
    env = {"KEEP_RECENT_TURNS": "3", "COMPACTION_THRESHOLD": "0.5"}

    with patch.dict(os.environ, env, clear=True):
        config = Settings().get_compaction_config()

        assert config.enabled is True
        assert config.keep_recent_turns == 3
        assert config.compaction_threshold == 0.5


def test_create_provider_per_vendor():
    """Test that the factory builds each vendor's provider."""
    env = {
        "ANTHROPIC_API_KEY": "a",
        "OPENAI_API_KEY": "o",
        "OPENAI_ORGANIZATION": "org_1",
        "GEMINI_API_KEY": "g",
        "MAX_TOKENS": "1024",
    }

    with patch.dict(os.environ, env, clear=True):
        settings = Settings()

        anthropic = create_provider("anthropic", settings=settings)
        openai = create_provider("openai", settings=settings)
        gemini = create_provider("gemini", settings=settings)

    assert isinstance(anthropic, AnthropicProvider)
    assert anthropic.default_max_tokens == 1024
    assert isinstance(openai, OpenAIProvider)
    assert openai.organization == "org_1"
    assert isinstance(gemini, GeminiProvider)


def test_create_provider_without_key():
    """Test that a missing credential is reported."""
    with patch.dict(os.environ, {}, clear=True):
        with pytest.raises(ProviderConfigurationError):
            create_provider("openai", settings=Settings())


def test_create_resolver_registers_configured_providers():
    """Test that only providers with keys are registered."""
    env = {"ANTHROPIC_API_KEY": "a", "OPENAI_API_KEY": "o"}

    with patch.dict(os.environ, env, clear=True):
        resolver = create_resolver(Settings())

    assert sorted(p.id for p in resolver.get_all()) == ["anthropic", "openai"]
    assert resolver.default_provider_id == "anthropic"
    assert isinstance(resolver.resolve_provider("gpt-4o"), OpenAIProvider)
    assert resolver.resolve_provider("gemini-2.5-flash") is not None

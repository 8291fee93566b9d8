"""
Map model identifiers to providers.

Resolution order:

1. registered providers, asked ``supports_model`` in registration order;
2. the pattern table, first matching rule whose provider is registered;
3. the default provider.
"""

import re
from dataclasses import dataclass
from typing import Iterator

import structlog

from ..errors import ProviderNotFoundError
from .base import BaseProvider

logger = structlog.get_logger()


@dataclass(frozen=True)
class ModelPattern:
    pattern: re.Pattern[str]
    provider_id: str

    def matches(self, model: str) -> bool:
        return self.pattern.search(model) is not None


DEFAULT_MODEL_PATTERNS: tuple[tuple[str, str], ...] = (
    (r"^claude-", "anthropic"),
    (r"^gpt-", "openai"),
    (r"^o1", "openai"),
    (r"^o3", "openai"),
    (r"^o4", "openai"),
    (r"^chatgpt", "openai"),
    (r"^codex", "openai"),
    (r"^gemini-", "gemini"),
    (r"^models/gemini-", "gemini"),
    (r"^deepseek-", "deepseek"),
    (r"^llama", "ollama"),
    (r"^mistral", "ollama"),
    (r"^codellama", "ollama"),
)


class ModelPatternTable:
    """Ordered list of model rules; earlier rules win."""

    def __init__(self, rules: list[ModelPattern] | None = None):
        self._rules: list[ModelPattern] = list(rules or [])

    @classmethod
    def defaults(cls) -> "ModelPatternTable":
        return cls([ModelPattern(re.compile(p), provider_id) for p, provider_id in DEFAULT_MODEL_PATTERNS])

    def prepend(self, rule: ModelPattern) -> None:
        self._rules.insert(0, rule)

    def append(self, rule: ModelPattern) -> None:
        self._rules.append(rule)

    def remove_provider(self, provider_id: str) -> int:
        before = len(self._rules)
        self._rules = [r for r in self._rules if r.provider_id != provider_id]
        return before - len(self._rules)

    def matching(self, model: str) -> Iterator[ModelPattern]:
        return (rule for rule in self._rules if rule.matches(model))

    def __iter__(self) -> Iterator[ModelPattern]:
        return iter(list(self._rules))

    def __len__(self) -> int:
        return len(self._rules)


class ProviderResolver:
    """Registry of providers plus the rules that pick one for a model."""

    def __init__(self, patterns: ModelPatternTable | None = None):
        self._providers: dict[str, BaseProvider] = {}
        self._patterns = patterns if patterns is not None else ModelPatternTable.defaults()
        self._default_id: str | None = None

    def register(self, provider: BaseProvider) -> None:
        self._providers[provider.id] = provider
        logger.info("Provider registered", provider=provider.id)

    def unregister(self, provider_id: str) -> None:
        if provider_id in self._providers:
            del self._providers[provider_id]
            logger.info("Provider unregistered", provider=provider_id)
        if self._default_id == provider_id:
            self._default_id = None

    def get(self, provider_id: str) -> BaseProvider | None:
        return self._providers.get(provider_id)

    def get_all(self) -> list[BaseProvider]:
        return list(self._providers.values())

    @property
    def default_provider_id(self) -> str | None:
        return self._default_id

    def set_default_provider(self, provider: BaseProvider | str) -> None:
        """Make ``provider`` the fallback. Provider objects are registered too."""
        if isinstance(provider, str):
            if provider not in self._providers:
                raise ProviderNotFoundError(f"Provider '{provider}' is not registered")
            self._default_id = provider
            return
        self.register(provider)
        self._default_id = provider.id

    def resolve_provider(self, model: str) -> BaseProvider | None:
        """Pick the provider for ``model``, or None if nothing applies."""
        for provider in self._providers.values():
            if provider.supports_model(model):
                return provider

        for rule in self._patterns.matching(model):
            provider = self._providers.get(rule.provider_id)
            if provider is not None:
                return provider

        if self._default_id is not None:
            return self._providers.get(self._default_id)
        return None

    def require_provider(self, model: str) -> BaseProvider:
        provider = self.resolve_provider(model)
        if provider is None:
            raise ProviderNotFoundError(f"No provider found for model '{model}'", details={"model": model})
        return provider

    def can_resolve(self, model: str) -> bool:
        return self.resolve_provider(model) is not None

    def get_provider_id_for_model(self, model: str) -> str | None:
        """Provider id for ``model`` without requiring that it is registered."""
        for provider in self._providers.values():
            if provider.supports_model(model):
                return provider.id

        rule = next(self._patterns.matching(model), None)
        if rule is not None:
            return rule.provider_id
        return self._default_id

    def add_pattern(self, pattern: str | re.Pattern[str], provider_id: str) -> None:
        """Add a rule that takes priority over every existing rule."""
        compiled = re.compile(pattern) if isinstance(pattern, str) else pattern
        self._patterns.prepend(ModelPattern(compiled, provider_id))

    def remove_patterns(self, provider_id: str) -> int:
        return self._patterns.remove_provider(provider_id)

    def list_patterns(self) -> list[tuple[str, str]]:
        return [(rule.pattern.pattern, rule.provider_id) for rule in self._patterns]

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()

"""Provider selection: maps a provider id to a fresh adapter instance."""

from __future__ import annotations

import logging

import httpx

from lumina_ai.config import ProviderConfig
from lumina_ai.errors import ConfigurationError

from .providers import (
    AnthropicProvider,
    ChatProvider,
    DeepSeekProvider,
    OllamaProvider,
    OpenAIProvider,
)

_logger = logging.getLogger(__name__)

_PROVIDERS: dict[str, type] = {
    DeepSeekProvider.id: DeepSeekProvider,
    OpenAIProvider.id: OpenAIProvider,
    AnthropicProvider.id: AnthropicProvider,
    OllamaProvider.id: OllamaProvider,
}


def create_provider(
    provider_id: str,
    config: ProviderConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> ChatProvider:
    """Construct the adapter for *provider_id*.

    Raises
    ------
    ConfigurationError
        If *provider_id* is not one of the known providers.
    """
    cls = _PROVIDERS.get((provider_id or "").strip().lower())
    if cls is None:
        known = ", ".join(sorted(_PROVIDERS))
        raise ConfigurationError(f"Unknown provider type: {provider_id!r} (expected one of: {known})")
    _logger.debug("Creating provider %s", cls.id)
    return cls(config or ProviderConfig(), client=client)


def available_providers() -> list[tuple[str, str]]:
    """Return ``(id, display name)`` for every supported provider."""
    return [(pid, cls.name) for pid, cls in _PROVIDERS.items()]

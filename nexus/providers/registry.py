"""Provider catalog and adapter lookup table."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from nexus.errors import ConfigurationError
from nexus.providers.anthropic import AnthropicAdapter
from nexus.providers.base import new_http_client
from nexus.providers.gemini import GeminiAdapter
from nexus.providers.openai_compat import (
    GroqAdapter,
    HuggingFaceAdapter,
    NvidiaAdapter,
    OpenRouterAdapter,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

    import httpx

    from nexus.providers.base import Provider, ProviderAdapter

logger = logging.getLogger(__name__)

ADAPTER_CLASSES: dict[str, type[ProviderAdapter]] = {
    cls.provider.id: cls
    for cls in (
        GeminiAdapter,
        GroqAdapter,
        OpenRouterAdapter,
        HuggingFaceAdapter,
        NvidiaAdapter,
        AnthropicAdapter,
    )
}

PROVIDERS: dict[str, Provider] = {pid: cls.provider for pid, cls in ADAPTER_CLASSES.items()}


class AdapterRegistry:
    """Holds one adapter instance per provider id.

    Build the standard set with ``AdapterRegistry.default()``; tests pass
    their own mapping.
    """

    def __init__(
        self,
        adapters: Mapping[str, ProviderAdapter],
        *,
        owned_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._adapters = dict(adapters)
        self._owned_client = owned_client

    @classmethod
    def default(cls, client: httpx.AsyncClient | None = None) -> AdapterRegistry:
        """Instantiate every known adapter, sharing one HTTP client.

        Without *client* the registry creates the shared client and closes
        it in ``aclose()``; an injected client is left to its owner.
        """
        owned = None
        if client is None:
            client = owned = new_http_client()
        adapters = {pid: adapter_cls(client) for pid, adapter_cls in ADAPTER_CLASSES.items()}
        return cls(adapters, owned_client=owned)

    def get(self, provider_id: str) -> ProviderAdapter:
        """Return the adapter for *provider_id*. Raises ConfigurationError if unknown."""
        try:
            return self._adapters[provider_id]
        except KeyError:
            msg = f"Unknown provider: {provider_id}"
            raise ConfigurationError(msg) from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)

    def providers(self) -> list[Provider]:
        """Display metadata for every registered provider, in registration order."""
        return [adapter.provider for adapter in self._adapters.values()]

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await adapter.aclose()
        if self._owned_client is not None:
            await self._owned_client.aclose()
            self._owned_client = None

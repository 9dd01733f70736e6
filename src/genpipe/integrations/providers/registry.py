"""Lookup table from provider name to adapter instance."""

from __future__ import annotations

from genpipe.integrations.providers.base import ProviderAdapter
from genpipe.integrations.providers.fal import FalAdapter
from genpipe.integrations.providers.kie import KieAdapter


class UnknownProvider(Exception):
    """Raised when a provider name has no registered adapter."""


class ProviderRegistry:
    """Holds one adapter per provider name."""

    def __init__(self, adapters: list[ProviderAdapter] | None = None) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters or []:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> ProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise UnknownProvider(f"No adapter registered for provider {name!r}")
        return adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)


def callback_url_for(settings, provider: str) -> str | None:
    """Return the webhook URL for *provider*, or None when callbacks are off.

    Callbacks need both a public base URL and a shared token; without a
    token the endpoint refuses every webhook.
    """
    if not settings.PUBLIC_BASE_URL or not settings.CALLBACK_TOKEN:
        return None
    base = settings.PUBLIC_BASE_URL.rstrip("/")
    return f"{base}/api/v1/callbacks/{provider}?token={settings.CALLBACK_TOKEN}"


def build_registry(settings) -> ProviderRegistry:
    """Build the production registry from application settings."""
    return ProviderRegistry([
        FalAdapter(
            api_key=settings.FAL_API_KEY,
            base_url=settings.FAL_BASE_URL,
            callback_url=callback_url_for(settings, "fal"),
            timeout=settings.PROVIDER_HTTP_TIMEOUT,
        ),
        KieAdapter(
            api_key=settings.KIE_API_KEY,
            base_url=settings.KIE_BASE_URL,
            callback_url=callback_url_for(settings, "kie"),
            timeout=settings.PROVIDER_HTTP_TIMEOUT,
        ),
    ])

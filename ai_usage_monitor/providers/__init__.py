"""
Provider adapters.

One adapter per ProviderKind. Adding a provider means adding an enum member
and an adapter here.
"""

from typing import Dict, Optional, Type

import httpx

from ai_usage_monitor.storage.models import Provider, ProviderKind
from .anthropic import AnthropicAdapter
from .base import ProviderAdapter
from .openai import OpenAIAdapter
from .openrouter import OpenRouterAdapter

ADAPTERS: Dict[ProviderKind, Type[ProviderAdapter]] = {
    ProviderKind.OPENAI: OpenAIAdapter,
    ProviderKind.ANTHROPIC: AnthropicAdapter,
    ProviderKind.OPENROUTER: OpenRouterAdapter,
}


def get_adapter(
    provider: Provider,
    client: httpx.AsyncClient,
    base_url: Optional[str] = None,
) -> ProviderAdapter:
    """Build the adapter for ``provider``'s kind."""
    return ADAPTERS[provider.kind](provider, client, base_url=base_url)


__all__ = [
    "ADAPTERS",
    "AnthropicAdapter",
    "OpenAIAdapter",
    "OpenRouterAdapter",
    "ProviderAdapter",
    "get_adapter",
]

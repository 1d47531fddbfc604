"""Lookup table of provider tool-calling adapters."""

from typing import Dict, List

from toolhub.adapters.vendor_adapter_anthropic import AnthropicAdapter
from toolhub.adapters.vendor_adapter_base import ProviderAdapter
from toolhub.adapters.vendor_adapter_gemini import GeminiAdapter
from toolhub.adapters.vendor_adapter_openai import OpenAIChatAdapter, OpenAIResponsesAdapter
from toolhub.adapters.vendor_adapter_xai import XAIAdapter


class UnknownProviderError(KeyError):
    """No adapter is registered for the provider id."""

    def __init__(self, provider_id: str, known: List[str]):
        self.provider_id = provider_id
        super().__init__(f"Unknown provider '{provider_id}'. Available: {', '.join(known)}")

    def __str__(self) -> str:
        return self.args[0]


_ADAPTERS: Dict[str, ProviderAdapter] = {
    adapter.provider_id: adapter
    for adapter in (
        OpenAIChatAdapter(),
        OpenAIResponsesAdapter(),
        GeminiAdapter(),
        AnthropicAdapter(),
        XAIAdapter(),
    )
}


def get_adapter(provider_id: str) -> ProviderAdapter:
    """
    Get the adapter for a provider.

    Args:
        provider_id: e.g. 'openai', 'openai_responses', 'gemini', 'anthropic', 'xai'

    Returns:
        ProviderAdapter instance

    Raises:
        UnknownProviderError: If no adapter is registered under that id
    """
    adapter = _ADAPTERS.get(provider_id)
    if adapter is None:
        raise UnknownProviderError(provider_id, list_providers())
    return adapter


def register_adapter(adapter: ProviderAdapter) -> None:
    """Add or replace an adapter (e.g. for an OpenAI-compatible gateway)."""
    if not adapter.provider_id:
        raise ValueError("Adapter must declare a provider_id")
    _ADAPTERS[adapter.provider_id] = adapter


def list_providers() -> List[str]:
    return sorted(_ADAPTERS)

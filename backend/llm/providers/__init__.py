"""Dynamic LLM provider loader.

Reads LLM_PROVIDER from the given settings and returns a fresh provider
instance.  Provider SDKs are imported lazily — only the selected
provider's SDK needs to be installed.

Usage:
    from llm.providers import load_provider
    provider = load_provider(settings)
"""

from __future__ import annotations

import logging

from .base import Completion, LLMProvider

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("openai", "anthropic")


def load_provider(settings) -> LLMProvider:
    """Instantiate the configured provider."""
    name = settings.LLM_PROVIDER.lower()

    if name == "openai":
        from .openai import OpenAIProvider

        return OpenAIProvider(
            api_key=settings.LLM_API_KEY,
            model=settings.LLM_MODEL,
            base_url=settings.LLM_BASE_URL,
        )
    elif name == "anthropic":
        from .anthropic import AnthropicProvider

        return AnthropicProvider(
            api_key=settings.LLM_API_KEY,
            model=settings.LLM_MODEL,
        )
    else:
        raise ValueError(
            f"Unknown LLM_PROVIDER: '{name}'.  "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )


__all__ = ["Completion", "LLMProvider", "SUPPORTED_PROVIDERS", "load_provider"]

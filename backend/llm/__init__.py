"""LLM package — generation service over pluggable providers.

    from llm import LLMClient, LLMGenerationService, load_provider
"""

from .client import LLMClient
from .generators import LLMGenerationService
from .providers import load_provider

__all__ = [
    "LLMClient",
    "LLMGenerationService",
    "load_provider",
]

"""LLM client — wraps a provider and prices every call.

    client = LLMClient(load_provider(settings),
                       input_cost_per_mtok=3.0, output_cost_per_mtok=15.0)
    text, cost = client.completion(messages, max_tokens=200)
"""

from __future__ import annotations

import logging
from typing import Optional

from .providers.base import LLMProvider

logger = logging.getLogger(__name__)


class LLMClient:

    def __init__(
        self,
        provider: LLMProvider,
        *,
        input_cost_per_mtok: float = 0.0,
        output_cost_per_mtok: float = 0.0,
        timeout: Optional[float] = None,
    ):
        self._provider = provider
        self._input_cost = input_cost_per_mtok
        self._output_cost = output_cost_per_mtok
        self._timeout = timeout

    @property
    def provider_name(self) -> str:
        return self._provider.name

    def completion(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.3,
        max_tokens: int = 1024,
    ) -> tuple[str, float]:
        """Send a chat-completion request; return ``(text, cost_usd)``."""
        result = self._provider.complete(
            messages,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=self._timeout,
        )
        cost = (
            result.input_tokens * self._input_cost
            + result.output_tokens * self._output_cost
        ) / 1_000_000
        logger.debug(
            f"{self._provider.name}: {result.input_tokens} in / "
            f"{result.output_tokens} out (${cost:.4f})"
        )
        return result.text, cost

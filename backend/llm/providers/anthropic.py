"""Anthropic LLM provider.

Handles Anthropic-specific API differences:
  - System prompt is a separate parameter (not a message)
  - Messages must strictly alternate user/assistant
  - Usage is reported as input_tokens / output_tokens
"""

from __future__ import annotations

import logging
from typing import Optional

from .base import Completion, LLMProvider

logger = logging.getLogger(__name__)


class AnthropicProvider(LLMProvider):
    """Anthropic Messages API."""

    DEFAULT_MODEL = "claude-sonnet-4-20250514"

    def __init__(self, api_key: str, model: str = ""):
        from anthropic import Anthropic  # type: ignore[import-untyped]

        self._client = Anthropic(api_key=api_key)
        self._model = model or self.DEFAULT_MODEL
        logger.info(f"Anthropic provider ready (model={self._model})")

    @property
    def name(self) -> str:
        return "anthropic"

    @staticmethod
    def _split_messages(
        messages: list[dict],
    ) -> tuple[str | None, list[dict]]:
        """Separate system messages from chat messages and merge same-role runs."""
        system_parts: list[str] = []
        merged: list[dict] = []
        for msg in messages:
            if msg["role"] == "system":
                system_parts.append(msg["content"])
            elif merged and merged[-1]["role"] == msg["role"]:
                merged[-1]["content"] += "\n\n" + msg["content"]
            else:
                merged.append({"role": msg["role"], "content": msg["content"]})

        # Anthropic requires first message to be user
        if merged and merged[0]["role"] != "user":
            merged.insert(0, {"role": "user", "content": "(continued)"})

        system = "\n\n".join(system_parts) if system_parts else None
        return system, merged

    def complete(
        self,
        messages: list[dict],
        *,
        temperature: float = 0.3,
        max_tokens: int = 1024,
        timeout: Optional[float] = None,
    ) -> Completion:
        system, chat_msgs = self._split_messages(messages)
        kwargs: dict = dict(
            model=self._model,
            messages=chat_msgs,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        if system:
            kwargs["system"] = system
        if timeout:
            kwargs["timeout"] = timeout

        response = self._client.messages.create(**kwargs)
        text = "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )
        usage = getattr(response, "usage", None)
        return Completion(
            text=text,
            input_tokens=getattr(usage, "input_tokens", 0) or 0,
            output_tokens=getattr(usage, "output_tokens", 0) or 0,
        )

"""Generation service — parent inference, query rephrasing, reply drafting.

All prompt text comes from :mod:`llm.prompts`; every call goes through
:class:`llm.client.LLMClient` so its cost is reported back to the caller.
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

from interfaces import GenerationService
from models import ConversationDetails, DocHit, Message, ParentGuess, ReplyVerdict, iso_timestamp

from .client import LLMClient
from .prompts import (
    HELPFUL_REPLY_SYSTEM,
    HELPFUL_REPLY_USER,
    PARENT_PROMPT,
    REPHRASE_PROMPT,
)

logger = logging.getLogger(__name__)

NULL_PARENT = "NULL"
DOC_EXCERPT_CHARS = 4000


# ═══════════════════════════════════════════════════════════════════════════
#  FORMATTING
# ═══════════════════════════════════════════════════════════════════════════

def format_message(m: Message, *, with_id: bool = False) -> str:
    name = m.author.display_name or m.author.id
    head = f"[{m.id}] " if with_id else ""
    reply = f" (replying to {m.reply_to})" if m.reply_to else ""
    return f"{head}{iso_timestamp(m.timestamp)} {name}{reply}: {m.content}"


def format_messages(messages: Sequence[Message], *, with_id: bool = False) -> str:
    return "\n".join(format_message(m, with_id=with_id) for m in messages)


def format_conversations(conversations: Sequence[ConversationDetails]) -> str:
    blocks = []
    for i, conv in enumerate(conversations, 1):
        blocks.append(
            f"--- Conversation {i} (distance {conv.distance:.3f}) ---\n"
            + format_messages(conv.messages)
        )
    return "\n\n".join(blocks) or "(none)"


def format_docs(docs: Sequence[DocHit]) -> str:
    blocks = [
        f"--- {hit.doc.file_name} ---\n{hit.doc.body[:DOC_EXCERPT_CHARS]}"
        for hit in docs
    ]
    return "\n\n".join(blocks) or "(none)"


# ═══════════════════════════════════════════════════════════════════════════
#  OUTPUT PARSING
# ═══════════════════════════════════════════════════════════════════════════

def extract_json_object(raw: str) -> dict:
    """Pull the first JSON object out of an LLM completion.

    Handles ```json fences and leading/trailing chatter.  Raises
    ``ValueError`` when no object can be decoded.
    """
    text = (raw or "").strip()
    if "```" in text:
        text = text.split("```")[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()

    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        raise ValueError(f"No JSON object in generator output: {raw[:120]!r}")
    try:
        data = json.loads(text[start:end + 1])
    except json.JSONDecodeError as e:
        raise ValueError(f"Malformed generator output: {e}") from e
    if not isinstance(data, dict):
        raise ValueError("Generator output is not a JSON object")
    return data


def _as_bool(value) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    raise ValueError(f"shouldReply is not a boolean: {value!r}")


def parse_verdict(raw: str, cost: float = 0.0) -> ReplyVerdict:
    data = extract_json_object(raw)
    missing = [k for k in ("reply", "helpfulness", "shouldReply") if k not in data]
    if missing:
        raise ValueError(f"Generator output missing fields: {', '.join(missing)}")
    try:
        helpfulness = float(data["helpfulness"])
    except (TypeError, ValueError) as e:
        raise ValueError(f"helpfulness is not a number: {data['helpfulness']!r}") from e

    return ReplyVerdict(
        internal_thoughts=str(data.get("internalThoughts", "")),
        reply=str(data.get("reply") or ""),
        helpfulness=helpfulness,
        should_reply=_as_bool(data["shouldReply"]),
        cost=cost,
    )


def parse_parent(raw: str) -> str | None:
    """First token of the completion, or None for the NULL sentinel."""
    text = (raw or "").strip().strip("`'\"").strip()
    if not text:
        return None
    token = text.split()[0].strip("[]`'\".,")
    if token.upper() == NULL_PARENT:
        return None
    return token


# ═══════════════════════════════════════════════════════════════════════════
#  SERVICE
# ═══════════════════════════════════════════════════════════════════════════

class LLMGenerationService(GenerationService):

    def __init__(
        self,
        client: LLMClient,
        *,
        max_response_tokens: int = 1024,
        max_parent_tokens: int = 40,
        max_rephrase_tokens: int = 200,
    ):
        self._client = client
        self._max_response_tokens = max_response_tokens
        self._max_parent_tokens = max_parent_tokens
        self._max_rephrase_tokens = max_rephrase_tokens

    def infer_parent(self, window: Sequence[Message], message: Message) -> ParentGuess:
        prompt = PARENT_PROMPT.format(
            window=format_messages(window, with_id=True),
            message=format_message(message, with_id=True),
        )
        raw, cost = self._client.completion(
            [{"role": "user", "content": prompt}],
            temperature=0.0,
            max_tokens=self._max_parent_tokens,
        )
        return ParentGuess(parent_id=parse_parent(raw), cost=cost)

    def rephrase_query(self, messages: Sequence[Message]) -> tuple[str, float]:
        prompt = REPHRASE_PROMPT.format(messages=format_messages(messages))
        raw, cost = self._client.completion(
            [{"role": "user", "content": prompt}],
            temperature=0.0,
            max_tokens=self._max_rephrase_tokens,
        )
        text = (raw or "").strip().strip('"').strip("'")
        if not text and messages:
            # Fall back to the last message verbatim.
            text = messages[-1].content
        return text, cost

    def generate_reply(
        self,
        conversations: Sequence[ConversationDetails],
        docs: Sequence[DocHit],
        messages: Sequence[Message],
    ) -> ReplyVerdict:
        user = HELPFUL_REPLY_USER.format(
            conversations=format_conversations(conversations),
            docs=format_docs(docs),
            messages=format_messages(messages),
        )
        raw, cost = self._client.completion(
            [
                {"role": "system", "content": HELPFUL_REPLY_SYSTEM},
                {"role": "user", "content": user},
            ],
            temperature=0.3,
            max_tokens=self._max_response_tokens,
        )
        verdict = parse_verdict(raw, cost)
        logger.info(
            f"Generator verdict: helpfulness={verdict.helpfulness:.1f}, "
            f"shouldReply={verdict.should_reply}, thoughts={verdict.internal_thoughts[:120]!r}"
        )
        return verdict

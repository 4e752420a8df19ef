"""Core records — messages, conversations, docs.

Everything here is a plain frozen dataclass.  The stores own the data;
these are the transient in-memory projections a processing pass works
with.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

import numpy as np


def to_utc(ts: datetime) -> datetime:
    """Normalise a timestamp to an aware UTC datetime (naive → assumed UTC)."""
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc)


def iso_timestamp(ts: datetime) -> str:
    """Render *ts* as ``2024-01-31T12:00:00.000Z`` (UTC, millisecond precision)."""
    utc = to_utc(ts)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware UTC datetime."""
    if isinstance(value, datetime):
        return to_utc(value)
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return to_utc(datetime.fromisoformat(text))


@dataclass(frozen=True)
class Author:
    id: str
    display_name: str
    is_bot: bool = False


@dataclass(frozen=True)
class Message:
    """One chat message.  Identity is ``id``."""

    id: str
    content: str
    timestamp: datetime
    author: Author
    channel_id: str
    reply_to: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "content": self.content,
            "timestamp": iso_timestamp(self.timestamp),
            "user": {
                "id": self.author.id,
                "displayName": self.author.display_name,
                "bot": self.author.is_bot,
            },
            "replyTo": self.reply_to,
            "channelId": self.channel_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        user = data.get("user") or data.get("author") or {}
        return cls(
            id=str(data["id"]),
            content=data.get("content", ""),
            timestamp=parse_timestamp(data["timestamp"]),
            author=Author(
                id=str(user.get("id", "")),
                display_name=user.get("displayName", user.get("display_name", "")),
                is_bot=bool(user.get("bot", False)),
            ),
            channel_id=str(data.get("channelId", data.get("channel_id", ""))),
            reply_to=data.get("replyTo", data.get("reply_to")) or None,
        )


@dataclass(frozen=True)
class MessageNode:
    """Graph-only projection of a Message: just the reply pointer and time."""

    id: str
    reply_to: Optional[str]
    timestamp: datetime


@dataclass(frozen=True)
class Conversation:
    """Connected component of the reply graph, identified by its root."""

    id: str
    message_ids: frozenset[str]
    start_time: datetime
    end_time: datetime


@dataclass(frozen=True)
class Doc:
    id: str
    file_name: str
    body: str


@dataclass
class ConversationDetails:
    """A hydrated retrieval hit: the conversation's messages plus its distance."""

    conversation_id: str
    messages: list[Message] = field(default_factory=list)
    distance: float = 0.0


@dataclass
class DocHit:
    doc: Doc
    distance: float = 0.0


@dataclass
class QueryEmbedding:
    """Query-time embedding plus the canonical text it was built from."""

    vector: np.ndarray
    rephrased: str
    cost: float = 0.0


@dataclass
class ParentGuess:
    """Outcome of reply-parent inference: ``parent_id`` is None for "no parent"."""

    parent_id: Optional[str]
    cost: float = 0.0


@dataclass
class ReplyVerdict:
    """Structured generator output for one triggering message."""

    internal_thoughts: str
    reply: str
    helpfulness: float
    should_reply: bool
    cost: float = 0.0

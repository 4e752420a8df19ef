"""Content fingerprints for messages, conversations and docs.

Digests are SHA-256 hex strings built by feeding fields in a fixed
order, so the same content hashes identically in every process.
"""

from __future__ import annotations

import hashlib
from typing import Iterable

from models import Doc, Message, iso_timestamp, to_utc


def hash_message(message: Message) -> str:
    h = hashlib.sha256()
    h.update(message.id.encode("utf-8"))
    h.update(message.content.encode("utf-8"))
    h.update(iso_timestamp(message.timestamp).encode("utf-8"))
    h.update(message.author.id.encode("utf-8"))
    h.update(message.author.display_name.encode("utf-8"))
    if message.reply_to:
        h.update(message.reply_to.encode("utf-8"))
    if message.channel_id:
        h.update(message.channel_id.encode("utf-8"))
    return h.hexdigest()


def conversation_order(messages: Iterable[Message]) -> list[Message]:
    """Timestamp ascending, id as tiebreaker."""
    return sorted(messages, key=lambda m: (to_utc(m.timestamp), m.id))


def hash_conversation(messages: Iterable[Message]) -> str:
    """Fold member fingerprints in conversation order.

    Independent of the input order; sensitive to any member field.
    """
    h = hashlib.sha256()
    for message in conversation_order(messages):
        h.update(hash_message(message).encode("ascii"))
    return h.hexdigest()


def hash_doc(doc: Doc) -> str:
    h = hashlib.sha256()
    h.update(doc.id.encode("utf-8"))
    h.update(doc.file_name.encode("utf-8"))
    h.update(doc.body.encode("utf-8"))
    return h.hexdigest()

"""In-process message source and reply sinks.

The chat transport itself lives outside this service: it POSTs every new
message to ``/messages`` (see main.py), which lands in a ChannelFeed.
The feed keeps a per-channel live buffer, backs ``fetch_all`` with the
on-disk mirror, and fans new non-bot messages out to subscribers.

Outgoing replies go through a ReplySink: WebhookReplySink POSTs them back
to the transport; LoggingReplySink only records them (dev / tests).
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Callable, Optional

import requests

from interfaces import MessageSource, ReplySink
from message_cache import MessageCache, merge_messages
from models import Message

logger = logging.getLogger(__name__)

Subscriber = Callable[[Message], None]


class ChannelFeed(MessageSource):

    def __init__(self, cache: Optional[MessageCache] = None, *, buffer_size: int = 5000):
        self._cache = cache
        self._buffer_size = buffer_size
        self._buffers: dict[str, dict[str, Message]] = {}
        self._subscribers: list[tuple[Optional[str], Subscriber]] = []
        self._lock = threading.Lock()

    # ── Push side ─────────────────────────────────────────────────

    def push(self, message: Message) -> bool:
        """Buffer *message*; notify subscribers unless a bot wrote it.

        Returns True when subscribers were notified.
        """
        with self._lock:
            buf = self._buffers.setdefault(message.channel_id, {})
            buf[message.id] = message
            if len(buf) > self._buffer_size:
                oldest = sorted(buf.values(), key=lambda m: (m.timestamp, m.id))
                for m in oldest[: len(buf) - self._buffer_size]:
                    del buf[m.id]
            targets = [
                cb for channel, cb in self._subscribers
                if channel is None or channel == message.channel_id
            ]

        if message.author.is_bot:
            return False
        for cb in targets:
            try:
                cb(message)
            except Exception as e:
                logger.error(f"Subscriber failed for message {message.id}: {e}")
        return bool(targets)

    def subscribe(self, channel_id: Optional[str], on_message: Subscriber) -> None:
        with self._lock:
            self._subscribers.append((channel_id, on_message))

    # ── Pull side ─────────────────────────────────────────────────

    def _buffered(self, channel_id: str) -> list[Message]:
        with self._lock:
            return list(self._buffers.get(channel_id, {}).values())

    def fetch_recent(self, channel_id: str, limit: int) -> list[Message]:
        history = merge_messages([], self._buffered(channel_id))
        if len(history) < limit and self._cache is not None:
            history = merge_messages(self._cache.load(channel_id) or [], history)
        return history[-limit:] if limit > 0 else []

    def fetch_all(self, channel_id: str) -> list[Message]:
        buffered = self._buffered(channel_id)
        if self._cache is None:
            return merge_messages([], buffered)
        if not buffered:
            cached = self._cache.load(channel_id) or []
            logger.info(f"Using cached messages for channel {channel_id} ({len(cached)})")
            return merge_messages(cached, [])
        return self._cache.merge_and_save(channel_id, buffered)


# ═══════════════════════════════════════════════════════════════════════════
#  REPLY SINKS
# ═══════════════════════════════════════════════════════════════════════════

class WebhookReplySink(ReplySink):
    """POST ``{channelId, content, inReplyTo}`` to the transport's webhook."""

    def __init__(self, url: str, *, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self._url = url
        self._timeout = timeout
        self._session = session or requests.Session()

    def send(self, channel_id: str, text: str, in_reply_to: Optional[str]) -> None:
        resp = self._session.post(
            self._url,
            json={"channelId": channel_id, "content": text, "inReplyTo": in_reply_to},
            timeout=self._timeout,
        )
        resp.raise_for_status()
        logger.info(f"Reply sent to channel {channel_id} (in reply to {in_reply_to})")


class LoggingReplySink(ReplySink):
    """Keeps the latest replies in ``sent``; used when no webhook is configured."""

    def __init__(self, *, max_kept: int = 1000):
        self.sent: deque[dict] = deque(maxlen=max_kept)
        self._lock = threading.Lock()

    def send(self, channel_id: str, text: str, in_reply_to: Optional[str]) -> None:
        with self._lock:
            self.sent.append({"channel_id": channel_id, "text": text, "in_reply_to": in_reply_to})
        logger.info(f"[reply → {channel_id}/{in_reply_to}] {text}")

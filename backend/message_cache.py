"""Local on-disk mirror of fetched channel messages.

One JSON file per channel (``messages-cache-<channel>.json``) holding
``{"messages": [...]}``, oldest first.  Best-effort: a missing or
unreadable file is reported as "no cache", never as an error.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Iterable, Optional

from models import Message, to_utc

logger = logging.getLogger(__name__)


def merge_messages(cached: Iterable[Message], fresh: Iterable[Message]) -> list[Message]:
    """Union by id (fresh copies win), oldest first."""
    merged: dict[str, Message] = {m.id: m for m in cached}
    for m in fresh:
        merged[m.id] = m
    return sorted(merged.values(), key=lambda m: (to_utc(m.timestamp), m.id))


class MessageCache:

    def __init__(self, directory: str | Path):
        self._dir = Path(directory)
        # Serializes read-merge-write; every save shares one .tmp path per channel.
        self._lock = threading.RLock()

    def path_for(self, channel_id: str) -> Path:
        safe = "".join(c for c in channel_id if c.isalnum() or c in "-_") or "default"
        return self._dir / f"messages-cache-{safe}.json"

    def load(self, channel_id: str) -> Optional[list[Message]]:
        path = self.path_for(channel_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return [Message.from_dict(m) for m in data.get("messages", [])]
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(f"Error loading cache {path.name}: {e}")
            return None

    def save(self, channel_id: str, messages: Iterable[Message]) -> Path:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(channel_id)
        payload = {"messages": [m.to_dict() for m in messages]}
        tmp = path.with_suffix(".json.tmp")
        with self._lock:
            tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
            os.replace(tmp, path)
        return path

    def merge_and_save(self, channel_id: str, fresh: Iterable[Message]) -> list[Message]:
        """Read, merge *fresh* in, write back; returns the merged history."""
        with self._lock:
            merged = merge_messages(self.load(channel_id) or [], fresh)
            self.save(channel_id, merged)
        logger.info(f"Mirrored {len(merged)} messages for channel {channel_id}")
        return merged

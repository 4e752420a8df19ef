"""Pytest conftest — backend/ on sys.path plus offline fakes for every service."""

import hashlib
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np
import pytest

# Add backend/ to sys.path so `import grouping`, `from llm.generators import ...` etc. work
_backend_dir = str(Path(__file__).resolve().parent.parent)
if _backend_dir not in sys.path:
    sys.path.insert(0, _backend_dir)

from interfaces import EmbeddingService, GenerationService  # noqa: E402
from models import Author, Message, ParentGuess, ReplyVerdict  # noqa: E402
from vector_store import InMemoryHashStore, InMemoryMessageStore  # noqa: E402

BASE_TIME = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
DIM = 64


def make_message(
    mid: str,
    reply_to: str | None = None,
    *,
    content: str | None = None,
    minutes: int | None = None,
    channel: str = "general",
    user: str = "u1",
    bot: bool = False,
) -> Message:
    """Message ``mid`` posted ``minutes`` after BASE_TIME (defaults to int(mid))."""
    offset = minutes if minutes is not None else (int(mid) if mid.isdigit() else 0)
    return Message(
        id=mid,
        content=content if content is not None else f"message {mid}",
        timestamp=BASE_TIME + timedelta(minutes=offset),
        author=Author(id=user, display_name=user.upper(), is_bot=bot),
        channel_id=channel,
        reply_to=reply_to,
    )


def text_vector(text: str, dim: int = DIM) -> np.ndarray:
    """Deterministic bag-of-words vector: similar text → nearby vectors."""
    vec = np.zeros(dim, dtype=np.float32)
    for token in text.lower().split():
        bucket = int(hashlib.md5(token.encode()).hexdigest(), 16) % dim
        vec[bucket] += 1.0
    return vec


class FakeEmbedder(EmbeddingService):
    """Counts calls; ``fail_on`` makes any input containing that text raise."""

    def __init__(self, fail_on: str | None = None):
        self.calls = 0
        self.fail_on = fail_on
        self._lock = threading.Lock()

    def _embed(self, text: str) -> np.ndarray:
        with self._lock:
            self.calls += 1
        if self.fail_on and self.fail_on in text:
            raise RuntimeError(f"embedding service rejected {self.fail_on!r}")
        return text_vector(text)

    def embed_conversation(self, messages):
        return self._embed(" ".join(m.content for m in messages))

    def embed_doc(self, doc):
        return self._embed(doc.body)

    def embed_query(self, text):
        return self._embed(text)


class SlowEmbedder(FakeEmbedder):
    """Sleeps inside embed_conversation and records keys embedded concurrently."""

    def __init__(self, delay: float = 0.05):
        super().__init__()
        self.delay = delay
        self.in_flight: set[str] = set()
        self.overlaps: list[str] = []

    def embed_conversation(self, messages):
        key = messages[0].id
        with self._lock:
            if key in self.in_flight:
                self.overlaps.append(key)
            self.in_flight.add(key)
        try:
            time.sleep(self.delay)
            return super().embed_conversation(messages)
        finally:
            with self._lock:
                self.in_flight.discard(key)


class PrunableMessageStore(InMemoryMessageStore):
    """In-memory store that can lose messages after they were indexed."""

    def delete_message(self, message_id: str) -> None:
        with self._lock:
            self._messages.pop(message_id, None)


class FlakyHashStore(InMemoryHashStore):
    """Hash store whose writes raise while ``broken`` is set."""

    def __init__(self, broken: bool = True):
        super().__init__()
        self.broken = broken

    def upsert(self, key, digest):
        if self.broken:
            raise RuntimeError("hash table unavailable")
        super().upsert(key, digest)


class FakeGenerator(GenerationService):
    """Scripted generation service.

    ``parents`` maps message id → inferred parent id (missing → "NULL").
    ``verdict`` is returned by generate_reply; ``fail`` makes every call raise.
    """

    def __init__(self, *, parents=None, verdict=None, fail=False, cost=0.01):
        self.parents = parents or {}
        self.verdict = verdict or ReplyVerdict(
            internal_thoughts="matches a past thread",
            reply="Try restarting the worker.",
            helpfulness=8,
            should_reply=True,
        )
        self.fail = fail
        self.cost = cost
        self.parent_calls: list[tuple[list[str], str]] = []
        self.reply_calls = 0
        self.rephrase_calls = 0
        self._lock = threading.Lock()

    def infer_parent(self, window, message):
        with self._lock:
            self.parent_calls.append(([m.id for m in window], message.id))
        if self.fail:
            raise RuntimeError("generation unavailable")
        return ParentGuess(parent_id=self.parents.get(message.id), cost=self.cost)

    def rephrase_query(self, messages):
        with self._lock:
            self.rephrase_calls += 1
        if self.fail:
            raise RuntimeError("generation unavailable")
        return " ".join(m.content for m in messages), self.cost

    def generate_reply(self, conversations, docs, messages):
        with self._lock:
            self.reply_calls += 1
        if self.fail:
            raise RuntimeError("generation unavailable")
        v = self.verdict
        return ReplyVerdict(v.internal_thoughts, v.reply, v.helpfulness, v.should_reply, self.cost)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def generator():
    return FakeGenerator()

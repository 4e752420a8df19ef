"""Incremental embedding pipeline.

Write path:

    raw messages ──► MessageIngestor ──► MessageStore
                                             │
                     ConversationGrouper ◄───┘
                             │
                             ▼
    EmbeddingPipeline:  hydrate ─► ChangeDetector ─► embed ─► index.replace ─► hash.upsert

Every unit (one conversation or one doc) runs in a bounded thread pool
(default width 20).  A unit is either fully updated (vector replaced
AND hash recorded) or counted as failed and left for the next pass.
A crash between the vector write and the hash write only means the unit
is re-embedded once more next time; re-running a pass is always safe.

Public API:
    EmbeddingPipeline — generic change-gated embed driver
    ConversationSync  — group a channel's messages and embed changed conversations
    DocSync           — store docs and embed changed ones
    MessageIngestor   — persist raw messages newest-first, inferring missing parents
    PassReport        — counters for one pass
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Callable, Generic, Iterable, Optional, Sequence, TypeVar

import numpy as np

from change_detection import ChangeDetector
from grouping import ConversationGrouper
from hashing import conversation_order, hash_conversation, hash_doc
from interfaces import (
    DocStore,
    EmbeddingService,
    GenerationService,
    HashStore,
    MessageStore,
    VectorIndex,
)
from models import Conversation, Doc, Message, to_utc
from worker import call_with_timeout, run_bounded

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorCallback = Callable[[str, BaseException], None]


# ═══════════════════════════════════════════════════════════════════════════
#  PASS REPORT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class PassReport:
    """What one pass did.  ``processed`` counts every finished unit."""

    name: str = "pass"
    total: int = 0
    processed: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    cost: float = 0.0
    failed_keys: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "total": self.total,
            "processed": self.processed,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "cost": round(self.cost, 6),
            "failed_keys": list(self.failed_keys),
        }

    def summary(self) -> str:
        return (
            f"{self.name}: {self.processed}/{self.total} processed, "
            f"{self.updated} updated, {self.skipped} unchanged, "
            f"{self.failed} failed, cost ${self.cost:.2f}"
        )


class _Tracker:
    """Lock-guarded mutation of a PassReport from pool threads."""

    def __init__(self, report: PassReport, on_progress: Optional[Callable[[PassReport], None]]):
        self.report = report
        self._lock = threading.Lock()
        self._on_progress = on_progress

    def finish(self, outcome: str, key: str = "") -> None:
        with self._lock:
            self.report.processed += 1
            if outcome == "updated":
                self.report.updated += 1
            elif outcome == "skipped":
                self.report.skipped += 1
            else:
                self.report.failed += 1
                self.report.failed_keys.append(key)
            snapshot = replace(self.report, failed_keys=list(self.report.failed_keys))
        if self._on_progress is not None:
            self._on_progress(snapshot)

    def add_cost(self, cost: float) -> None:
        if cost:
            with self._lock:
                self.report.cost += cost


# ═══════════════════════════════════════════════════════════════════════════
#  GENERIC EMBEDDING PIPELINE
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Unit(Generic[T]):
    """One re-embedding candidate.  ``load`` hydrates its content inside the pool."""

    key: str
    load: Callable[[], T]


class EmbeddingPipeline(Generic[T]):
    """Change-gated, failure-isolated embed driver over a bounded pool."""

    def __init__(
        self,
        index: VectorIndex,
        detector: ChangeDetector,
        embed: Callable[[T], np.ndarray],
        *,
        name: str = "embeddings",
        concurrency: int = 20,
        embed_timeout: Optional[float] = 60.0,
        on_error: Optional[ErrorCallback] = None,
        on_progress: Optional[Callable[[PassReport], None]] = None,
    ):
        self._index = index
        self._detector = detector
        self._embed = embed
        self._name = name
        self._concurrency = concurrency
        self._embed_timeout = embed_timeout
        self._on_error = on_error
        self._on_progress = on_progress
        # One pass at a time per index: a key is never processed by two units at once.
        self._run_lock = threading.Lock()

    def run(self, units: Iterable[Unit[T]]) -> PassReport:
        with self._run_lock:
            return self._run(list(units))

    def _run(self, units: list[Unit[T]]) -> PassReport:
        tracker = _Tracker(PassReport(name=self._name, total=len(units)), self._on_progress)

        def _on_error(unit: Unit[T], exc: BaseException) -> None:
            tracker.finish("failed", unit.key)
            if self._on_error is not None:
                self._on_error(unit.key, exc)
            else:
                logger.error(f"[{self._name}] error processing {unit.key}: {exc}")

        run_bounded(
            partial(self._process, tracker=tracker),
            units,
            max_workers=self._concurrency,
            on_error=_on_error,
            thread_name_prefix=self._name,
        )

        logger.info(tracker.report.summary())
        return tracker.report

    def _process(self, unit: Unit[T], *, tracker: _Tracker) -> bool:
        content = unit.load()
        if not content:
            logger.debug(f"[{self._name}] {unit.key}: nothing to embed")
            tracker.finish("skipped", unit.key)
            return False

        decision = self._detector.check(unit.key, content)
        if not decision.changed:
            logger.debug(f"[{self._name}] {unit.key}: unchanged")
            tracker.finish("skipped", unit.key)
            return False

        vector = call_with_timeout(self._embed, content, timeout=self._embed_timeout)
        vector = np.asarray(vector, dtype=np.float32).flatten()
        if vector.size == 0:
            raise ValueError(f"empty embedding for {unit.key}")

        self._index.replace(unit.key, vector)
        self._detector.record(unit.key, decision.new_hash)
        tracker.finish("updated", unit.key)
        return True


# ═══════════════════════════════════════════════════════════════════════════
#  CONVERSATIONS
# ═══════════════════════════════════════════════════════════════════════════

class ConversationSync:
    """Group stored messages into conversations and re-embed the changed ones."""

    def __init__(
        self,
        store: MessageStore,
        index: VectorIndex,
        hashes: HashStore,
        embedder: EmbeddingService,
        *,
        concurrency: int = 20,
        embed_timeout: Optional[float] = 60.0,
        on_error: Optional[ErrorCallback] = None,
        on_progress: Optional[Callable[[PassReport], None]] = None,
    ):
        self._store = store
        self._grouper = ConversationGrouper(store)
        self._pipeline: EmbeddingPipeline[list[Message]] = EmbeddingPipeline(
            index,
            ChangeDetector(hashes, hash_conversation),
            embedder.embed_conversation,
            name="conversations",
            concurrency=concurrency,
            embed_timeout=embed_timeout,
            on_error=on_error,
            on_progress=on_progress,
        )

    def units(self, conversations: Sequence[Conversation]) -> list[Unit[list[Message]]]:
        return [
            Unit(conv.id, partial(self._hydrate, conv))
            for conv in conversations
        ]

    def _hydrate(self, conversation: Conversation) -> list[Message]:
        return conversation_order(self._store.get_messages(conversation.message_ids))

    def embed(self, conversations: Sequence[Conversation]) -> PassReport:
        return self._pipeline.run(self.units(conversations))

    def sync(self, channel_id: Optional[str] = None) -> PassReport:
        conversations = self._grouper.group(channel_id)
        return self.embed(conversations)


# ═══════════════════════════════════════════════════════════════════════════
#  DOCS
# ═══════════════════════════════════════════════════════════════════════════

class DocSync:
    """Persist docs and re-embed the ones whose content changed."""

    def __init__(
        self,
        docs: DocStore,
        index: VectorIndex,
        hashes: HashStore,
        embedder: EmbeddingService,
        *,
        concurrency: int = 20,
        embed_timeout: Optional[float] = 60.0,
        on_error: Optional[ErrorCallback] = None,
        on_progress: Optional[Callable[[PassReport], None]] = None,
    ):
        self._docs = docs
        self._pipeline: EmbeddingPipeline[Doc] = EmbeddingPipeline(
            index,
            ChangeDetector(hashes, hash_doc),
            embedder.embed_doc,
            name="docs",
            concurrency=concurrency,
            embed_timeout=embed_timeout,
            on_error=on_error,
            on_progress=on_progress,
        )

    def _store_and_load(self, doc: Doc) -> Doc:
        self._docs.upsert_doc(doc)
        return doc

    def sync(self, docs: Iterable[Doc]) -> PassReport:
        return self._pipeline.run(
            Unit(doc.id, partial(self._store_and_load, doc)) for doc in docs
        )


# ═══════════════════════════════════════════════════════════════════════════
#  RAW MESSAGE INGESTION
# ═══════════════════════════════════════════════════════════════════════════

NULL_PARENT = "NULL"


class MessageIngestor:
    """Persist fetched messages, newest first.

    A message without a reply pointer is shown to the generator together
    with the ``lookback`` messages before it in the channel; the guess is
    kept only when it names one of those messages.  Inference failures
    are logged and the message is stored without a parent.
    """

    def __init__(
        self,
        store: MessageStore,
        generator: Optional[GenerationService] = None,
        *,
        lookback: int = 15,
        infer_parents: bool = True,
        concurrency: int = 20,
        generate_timeout: Optional[float] = 120.0,
        on_error: Optional[ErrorCallback] = None,
        on_progress: Optional[Callable[[PassReport], None]] = None,
    ):
        self._store = store
        self._generator = generator
        self._lookback = lookback
        self._infer_parents = infer_parents and generator is not None
        self._concurrency = concurrency
        self._generate_timeout = generate_timeout
        self._on_error = on_error
        self._on_progress = on_progress

    def ingest(self, messages: Iterable[Message]) -> PassReport:
        unique = {m.id: m for m in messages}
        ordered = sorted(unique.values(), key=lambda m: (to_utc(m.timestamp), m.id))
        channels: dict[str, list[Message]] = {}
        position: dict[str, int] = {}
        for m in ordered:
            history = channels.setdefault(m.channel_id, [])
            position[m.id] = len(history)
            history.append(m)
        tracker = _Tracker(PassReport(name="messages", total=len(ordered)), self._on_progress)

        def _process(message: Message) -> None:
            pos = position[message.id]
            start = max(0, pos - self._lookback)
            window = channels[message.channel_id][start:pos] if self._lookback > 0 else []
            self._ingest_one(message, window, tracker)

        def _on_error(message: Message, exc: BaseException) -> None:
            tracker.finish("failed", message.id)
            if self._on_error is not None:
                self._on_error(message.id, exc)
            else:
                logger.error(f"[messages] error processing {message.id}: {exc}")

        run_bounded(
            _process,
            list(reversed(ordered)),
            max_workers=self._concurrency,
            on_error=_on_error,
            thread_name_prefix="messages",
        )

        logger.info(tracker.report.summary())
        return tracker.report

    def _ingest_one(self, message: Message, window: list[Message], tracker: _Tracker) -> None:
        if self._store.message_exists(message.id):
            tracker.finish("skipped", message.id)
            return

        self._store.upsert_user(message.author)

        if message.reply_to is None and self._infer_parents:
            parent = self._infer_parent(message, window, tracker)
            if parent is not None:
                message = replace(message, reply_to=parent)

        self._store.upsert_message(message)
        tracker.finish("updated", message.id)

    def _infer_parent(self, message: Message, window: list[Message], tracker: _Tracker) -> Optional[str]:
        if not window:
            return None
        try:
            guess = call_with_timeout(
                self._generator.infer_parent, window, message,
                timeout=self._generate_timeout,
            )
        except Exception as e:
            logger.warning(f"Parent inference failed for {message.id}: {e}")
            return None

        tracker.add_cost(guess.cost)
        parent = (guess.parent_id or "").strip()
        if not parent or parent == NULL_PARENT:
            return None
        if parent == message.id or parent not in {m.id for m in window}:
            logger.warning(f"Ignoring inferred parent {parent!r} for {message.id}: not in look-back window")
            return None
        logger.debug(f"Inferred parent {parent} for {message.id}")
        return parent

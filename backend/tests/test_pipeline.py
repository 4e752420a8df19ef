"""Tests for the incremental embedding pipeline and raw-message ingestion.

Everything runs against the in-memory stores and fake services from
conftest — no database, no model, no LLM.
"""

import threading
import time
from dataclasses import replace
from unittest.mock import MagicMock

import numpy as np
import pytest

from change_detection import ChangeDetector
from conftest import FakeEmbedder, FakeGenerator, FlakyHashStore, SlowEmbedder, make_message
from hashing import hash_conversation, hash_doc
from models import Doc
from pipeline import (
    ConversationSync, DocSync, EmbeddingPipeline, MessageIngestor, PassReport, Unit,
)
from vector_store import (
    InMemoryDocStore, InMemoryHashStore, InMemoryMessageStore, InMemoryVectorIndex,
)


def seeded_store(*messages):
    store = InMemoryMessageStore()
    for m in messages:
        store.upsert_user(m.author)
        store.upsert_message(m)
    return store


def two_threads():
    return [
        make_message("1"), make_message("2", "1"), make_message("3", "2"),
        make_message("10", content="unrelated question"), make_message("11", "10"),
    ]


@pytest.fixture
def sync_parts():
    store = seeded_store(*two_threads())
    index = InMemoryVectorIndex()
    hashes = InMemoryHashStore()
    embedder = FakeEmbedder()
    sync = ConversationSync(store, index, hashes, embedder, concurrency=4)
    return store, index, hashes, embedder, sync


# ═══════════════════════════════════════════════════════════════════════════
#  ConversationSync
# ═══════════════════════════════════════════════════════════════════════════

class TestConversationSync:
    def test_first_pass_embeds_every_conversation(self, sync_parts):
        store, index, hashes, embedder, sync = sync_parts
        report = sync.sync("general")

        assert report.total == 2
        assert report.updated == 2
        assert report.failed == 0
        assert embedder.calls == 2
        assert "1" in index and "10" in index
        assert hashes.get("1") == hash_conversation(store.get_messages({"1", "2", "3"}))

    def test_second_pass_makes_zero_embedding_calls(self, sync_parts):
        _, _, _, embedder, sync = sync_parts
        sync.sync()
        calls_after_first = embedder.calls

        report = sync.sync()
        assert embedder.calls == calls_after_first
        assert report.updated == 0
        assert report.skipped == 2

    def test_edit_reembeds_only_affected_conversation(self, sync_parts):
        store, index, hashes, embedder, sync = sync_parts
        sync.sync()
        sibling_hash = hashes.get("10")
        before = embedder.calls

        store.upsert_message(replace(store.get_messages(["2"])[0], content="edited"))
        report = sync.sync()

        assert embedder.calls == before + 1
        assert report.updated == 1
        assert hashes.get("10") == sibling_hash

    def test_reply_joins_existing_conversation(self, sync_parts):
        store, index, hashes, embedder, sync = sync_parts
        sync.sync()
        old_vector = index.get("1").copy()

        store.upsert_message(make_message("4", "3", content="solved by restarting"))
        report = sync.sync()

        assert report.updated == 1
        assert not np.array_equal(index.get("1"), old_vector)
        assert len(index) == 2

    def test_failure_isolated_and_retried(self, sync_parts):
        store, index, hashes, _, _ = sync_parts
        flaky = FakeEmbedder(fail_on="unrelated")
        errors = []
        sync = ConversationSync(
            store, index, hashes, flaky, on_error=lambda key, exc: errors.append(key),
        )

        report = sync.sync()
        assert report.updated == 1
        assert report.failed == 1
        assert report.failed_keys == ["10"]
        assert errors == ["10"]
        assert "10" not in index
        assert hashes.get("10") is None

        flaky.fail_on = None
        retry = sync.sync()
        assert retry.updated == 1
        assert retry.skipped == 1
        assert "10" in index

    def test_index_write_failure_leaves_hash_untouched(self, sync_parts):
        store, _, hashes, embedder, _ = sync_parts
        index = MagicMock()
        index.replace.side_effect = IOError("index down")
        sync = ConversationSync(store, index, hashes, embedder)

        report = sync.sync()
        assert report.failed == 2
        assert hashes.get("1") is None

    def test_hash_write_failure_fails_unit_then_heals(self, embedder):
        store = seeded_store(make_message("1"), make_message("2", "1"))
        index = InMemoryVectorIndex()
        hashes = FlakyHashStore(broken=True)
        sync = ConversationSync(store, index, hashes, embedder)

        report = sync.sync()
        assert report.failed == 1
        assert report.updated == 0
        assert hashes.get("1") is None

        hashes.broken = False
        calls_before = embedder.calls
        retry = sync.sync()
        assert retry.updated == 1
        assert embedder.calls == calls_before + 1
        assert hashes.get("1") is not None
        assert "1" in index

    def test_overlapping_passes_never_share_a_conversation(self):
        store = seeded_store(*two_threads())
        slow = SlowEmbedder()
        sync = ConversationSync(store, InMemoryVectorIndex(), InMemoryHashStore(), slow)

        threads = [threading.Thread(target=sync.sync) for _ in range(3)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert slow.overlaps == []
        assert slow.calls == 2

    def test_node_enumeration_failure_aborts_pass(self, embedder):
        store = MagicMock()
        store.get_all_message_nodes.side_effect = ConnectionError("db down")
        sync = ConversationSync(store, InMemoryVectorIndex(), InMemoryHashStore(), embedder)
        with pytest.raises(ConnectionError):
            sync.sync()

    def test_progress_callback_sees_every_unit(self, sync_parts):
        store, index, hashes, embedder, _ = sync_parts
        seen = []
        sync = ConversationSync(store, index, hashes, embedder, on_progress=seen.append)
        sync.sync()
        assert len(seen) == 2
        assert seen[-1].processed == 2


# ═══════════════════════════════════════════════════════════════════════════
#  EmbeddingPipeline (generic)
# ═══════════════════════════════════════════════════════════════════════════

class TestEmbeddingPipeline:
    def test_empty_hydration_is_skipped(self, embedder):
        pipeline = EmbeddingPipeline(
            InMemoryVectorIndex(), ChangeDetector(InMemoryHashStore()), embedder.embed_conversation,
        )
        report = pipeline.run([Unit("gone", lambda: [])])
        assert report.skipped == 1
        assert report.failed == 0
        assert embedder.calls == 0

    def test_timeout_is_unit_failure(self):
        release = threading.Event()

        def slow_embed(messages):
            release.wait(5)
            return np.ones(4)

        index = InMemoryVectorIndex()
        pipeline = EmbeddingPipeline(
            index, ChangeDetector(InMemoryHashStore()), slow_embed, embed_timeout=0.05,
        )
        start = time.monotonic()
        report = pipeline.run([Unit("1", lambda: [make_message("1")])])
        release.set()

        assert report.failed == 1
        assert "1" not in index
        assert time.monotonic() - start < 5

    def test_concurrency_is_bounded(self):
        active = 0
        peak = 0
        lock = threading.Lock()

        def embed(messages):
            nonlocal active, peak
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.01)
            with lock:
                active -= 1
            return np.ones(4)

        pipeline = EmbeddingPipeline(
            InMemoryVectorIndex(), ChangeDetector(InMemoryHashStore()), embed, concurrency=3,
        )
        units = [Unit(str(i), lambda i=i: [make_message(str(i))]) for i in range(20)]
        report = pipeline.run(units)

        assert report.updated == 20
        assert peak <= 3

    def test_empty_vector_rejected(self):
        pipeline = EmbeddingPipeline(
            InMemoryVectorIndex(), ChangeDetector(InMemoryHashStore()), lambda _: [],
        )
        report = pipeline.run([Unit("1", lambda: [make_message("1")])])
        assert report.failed == 1


class TestPassReport:
    def test_to_dict_and_summary(self):
        report = PassReport(name="x", total=3, processed=3, updated=1, skipped=1, failed=1,
                            cost=0.5, failed_keys=["k"])
        assert report.to_dict()["failed_keys"] == ["k"]
        assert "1 failed" in report.summary()


# ═══════════════════════════════════════════════════════════════════════════
#  DocSync
# ═══════════════════════════════════════════════════════════════════════════

class TestDocSync:
    def _docs(self):
        return [
            Doc(id="a.md", file_name="a.md", body="install the cli"),
            Doc(id="guide/b.mdx", file_name="guide/b.mdx", body="configure plugins"),
        ]

    def test_stores_and_embeds(self, embedder):
        docs, index, hashes = InMemoryDocStore(), InMemoryVectorIndex(), InMemoryHashStore()
        report = DocSync(docs, index, hashes, embedder).sync(self._docs())

        assert report.updated == 2
        assert len(docs.get_docs(["a.md", "guide/b.mdx"])) == 2
        assert hashes.get("a.md") == hash_doc(self._docs()[0])

    def test_unchanged_docs_skipped(self, embedder):
        docs, index, hashes = InMemoryDocStore(), InMemoryVectorIndex(), InMemoryHashStore()
        doc_sync = DocSync(docs, index, hashes, embedder)
        doc_sync.sync(self._docs())
        before = embedder.calls

        edited = self._docs()
        edited[1] = replace(edited[1], body="configure plugins and hooks")
        report = doc_sync.sync(edited)

        assert embedder.calls == before + 1
        assert report.skipped == 1
        assert docs.get_docs(["guide/b.mdx"])[0].body.endswith("hooks")


# ═══════════════════════════════════════════════════════════════════════════
#  MessageIngestor
# ═══════════════════════════════════════════════════════════════════════════

class TestMessageIngestor:
    def test_stores_new_messages_and_users(self):
        store = InMemoryMessageStore()
        report = MessageIngestor(store).ingest(two_threads())
        assert report.updated == 5
        assert store.message_exists("11")

    def test_existing_messages_skipped(self):
        store = seeded_store(make_message("1"))
        report = MessageIngestor(store).ingest([make_message("1"), make_message("2", "1")])
        assert report.skipped == 1
        assert report.updated == 1

    def test_duplicate_input_ids_ingested_once(self):
        store = InMemoryMessageStore()
        report = MessageIngestor(store).ingest([make_message("1"), make_message("1")])
        assert report.total == 1

    def test_parent_inferred_from_window(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(parents={"3": "1"}, cost=0.25)
        msgs = [make_message("1"), make_message("2"), make_message("3")]

        report = MessageIngestor(store, gen).ingest(msgs)

        assert store.get_messages(["3"])[0].reply_to == "1"
        assert store.get_messages(["2"])[0].reply_to is None
        # "1" has an empty window → no call; "2" and "3" each cost 0.25
        assert report.cost == pytest.approx(0.5)

    def test_window_is_bounded_and_same_channel(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator()
        msgs = [make_message(str(i)) for i in range(1, 21)]
        msgs.append(make_message("99", channel="other", minutes=19))

        MessageIngestor(store, gen, lookback=5).ingest(msgs)

        windows = dict((mid, window) for window, mid in gen.parent_calls)
        assert windows["20"] == ["15", "16", "17", "18", "19"]
        assert "99" not in windows
        assert all("99" not in w for w in windows.values())

    def test_parent_outside_window_rejected(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(parents={"3": "not-a-message"})
        MessageIngestor(store, gen).ingest([make_message("1"), make_message("2"), make_message("3")])
        assert store.get_messages(["3"])[0].reply_to is None

    def test_null_sentinel_means_no_parent(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(parents={"2": "NULL"})
        MessageIngestor(store, gen).ingest([make_message("1"), make_message("2")])
        assert store.get_messages(["2"])[0].reply_to is None

    def test_explicit_reply_not_reinferred(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(parents={"2": "0"})
        MessageIngestor(store, gen).ingest([make_message("1"), make_message("2", "1")])
        assert store.get_messages(["2"])[0].reply_to == "1"
        assert all(mid != "2" for _, mid in gen.parent_calls)

    def test_inference_failure_stores_without_parent(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(fail=True)
        report = MessageIngestor(store, gen).ingest([make_message("1"), make_message("2")])
        assert report.updated == 2
        assert store.get_messages(["2"])[0].reply_to is None

    def test_store_failure_isolated_per_message(self):
        store = InMemoryMessageStore()
        real_upsert = store.upsert_message

        def flaky(message):
            if message.id == "2":
                raise IOError("write failed")
            real_upsert(message)

        store.upsert_message = flaky
        errors = []
        report = MessageIngestor(store, on_error=lambda key, exc: errors.append(key)).ingest(
            [make_message("1"), make_message("2"), make_message("3")]
        )
        assert report.failed == 1
        assert errors == ["2"]
        assert store.message_exists("1") and store.message_exists("3")

    def test_inference_disabled(self):
        store = InMemoryMessageStore()
        gen = FakeGenerator(parents={"2": "1"})
        MessageIngestor(store, gen, infer_parents=False).ingest([make_message("1"), make_message("2")])
        assert gen.parent_calls == []

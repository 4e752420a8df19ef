"""Tests for the read path: query embedding, KNN, stale filtering, answer()."""

from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import DIM, FakeEmbedder, FakeGenerator, PrunableMessageStore, make_message, text_vector
from models import Doc, QueryEmbedding
from pipeline import ConversationSync, DocSync
from retrieval import RetrievalEngine
from vector_store import (
    InMemoryDocStore, InMemoryHashStore, InMemoryMessageStore, InMemoryVectorIndex,
)


@pytest.fixture
def world():
    """Two embedded conversations and one embedded doc."""
    store = PrunableMessageStore()
    msgs = [
        make_message("1", content="worker crashes on startup"),
        make_message("2", "1", content="restart the worker with more memory"),
        make_message("10", content="how do I change the theme colour"),
        make_message("11", "10", content="settings then appearance"),
    ]
    for m in msgs:
        store.upsert_message(m)

    embedder = FakeEmbedder()
    conv_index = InMemoryVectorIndex()
    ConversationSync(store, conv_index, InMemoryHashStore(), embedder).sync()

    docs = InMemoryDocStore()
    doc_index = InMemoryVectorIndex()
    DocSync(docs, doc_index, InMemoryHashStore(), embedder).sync(
        [Doc(id="worker.md", file_name="worker.md", body="worker memory limits")]
    )
    return store, conv_index, docs, doc_index, embedder


def engine_for(world, generator, **kwargs):
    store, conv_index, docs, doc_index, embedder = world
    return RetrievalEngine(
        store, conv_index, embedder, generator, doc_index=doc_index, doc_store=docs, **kwargs,
    )


# ─── KNN ──────────────────────────────────────────────────────────────────

class TestKnnConversations:
    def test_ascending_and_hydrated(self, world, generator):
        engine = engine_for(world, generator)
        hits = engine.knn_conversations(text_vector("worker crashes restart memory"))
        assert [h.conversation_id for h in hits][0] == "1"
        assert [h.distance for h in hits] == sorted(h.distance for h in hits)
        assert [m.id for m in hits[0].messages] == ["1", "2"]

    def test_k_limits_results(self, world, generator):
        engine = engine_for(world, generator)
        assert len(engine.knn_conversations(text_vector("worker"), k=1)) == 1

    def test_stale_entry_dropped(self, world, generator):
        store, conv_index, *_ = world
        conv_index.upsert("deleted-root", text_vector("worker crashes on startup"))
        engine = engine_for(world, generator)

        ids = [h.conversation_id for h in engine.knn_conversations(text_vector("worker crashes"))]
        assert "deleted-root" not in ids
        assert "1" in ids

    def test_conversation_emptied_after_indexing_dropped(self, world, generator):
        store, *_ = world
        store.delete_message("10")
        store.delete_message("11")
        engine = engine_for(world, generator)
        ids = [h.conversation_id for h in engine.knn_conversations(text_vector("theme colour"))]
        assert ids == ["1"]

    def test_empty_index(self, generator):
        engine = RetrievalEngine(
            InMemoryMessageStore(), InMemoryVectorIndex(), FakeEmbedder(), generator,
        )
        assert engine.knn_conversations(np.ones(DIM)) == []


class TestKnnDocs:
    def test_returns_doc_hits(self, world, generator):
        hits = engine_for(world, generator).knn_docs(text_vector("worker memory"))
        assert [h.doc.id for h in hits] == ["worker.md"]

    def test_without_doc_index(self, world, generator):
        store, conv_index, _, _, embedder = world
        engine = RetrievalEngine(store, conv_index, embedder, generator)
        assert engine.knn_docs(np.ones(DIM)) == []


# ─── Query embedding ──────────────────────────────────────────────────────

class TestEmbedQuery:
    def test_rephrase_then_embed(self, world, generator):
        engine = engine_for(world, generator)
        q = engine.embed_query([make_message("50", content="worker died")])
        assert q.rephrased == "worker died"
        assert q.vector.shape == (DIM,)
        assert q.cost == pytest.approx(generator.cost)

    def test_cache_hit_skips_generation(self, world, generator):
        cache = MagicMock()
        cache.get.return_value = QueryEmbedding(vector=np.ones(DIM, dtype=np.float32), rephrased="cached")
        engine = engine_for(world, generator, cache=cache)

        q = engine.embed_query([make_message("50")])
        assert q.rephrased == "cached"
        assert generator.rephrase_calls == 0
        cache.put.assert_not_called()

    def test_cache_miss_stores(self, world, generator):
        cache = MagicMock()
        cache.get.return_value = None
        engine_for(world, generator, cache=cache).embed_query([make_message("50")])
        cache.put.assert_called_once()


# ─── answer() ─────────────────────────────────────────────────────────────

class TestAnswer:
    def test_returns_verdict_with_total_cost(self, world, generator):
        verdict = engine_for(world, generator).answer(
            [make_message("50", content="my worker crashes")]
        )
        assert verdict is not None
        assert verdict.should_reply
        assert verdict.cost == pytest.approx(2 * generator.cost)
        assert generator.reply_calls == 1

    def test_empty_window_is_no_answer(self, world, generator):
        assert engine_for(world, generator).answer([]) is None
        assert generator.rephrase_calls == 0

    def test_no_conversations_never_generates(self, generator):
        engine = RetrievalEngine(
            InMemoryMessageStore(), InMemoryVectorIndex(), FakeEmbedder(), generator,
        )
        assert engine.answer([make_message("50")]) is None
        assert generator.reply_calls == 0

    def test_only_stale_hits_never_generates(self, generator):
        index = InMemoryVectorIndex()
        index.upsert("ghost", text_vector("anything"))
        engine = RetrievalEngine(InMemoryMessageStore(), index, FakeEmbedder(), generator)
        assert engine.answer([make_message("50", content="anything")]) is None
        assert generator.reply_calls == 0

    def test_generation_failure_is_no_answer(self, world):
        gen = FakeGenerator(fail=True)
        assert engine_for(world, gen).answer([make_message("50")]) is None

    def test_store_failure_is_no_answer(self, world, generator):
        _, conv_index, docs, doc_index, embedder = world
        store = MagicMock()
        store.get_messages_in_thread.side_effect = ConnectionError("db down")
        engine = RetrievalEngine(
            store, conv_index, embedder, generator, doc_index=doc_index, doc_store=docs,
        )
        assert engine.answer([make_message("50", content="worker")]) is None
        assert generator.reply_calls == 0

    def test_embed_failure_is_no_answer(self, world, generator):
        store, conv_index, *_ = world
        engine = RetrievalEngine(store, conv_index, FakeEmbedder(fail_on="worker"), generator)
        assert engine.answer([make_message("50", content="worker")]) is None

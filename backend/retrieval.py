"""Retrieval engine — query → precedent conversations + docs → reply verdict.

Read path:
  1. embed_query()        — rephrase the rolling window, embed the result
  2. knn_conversations()  ┐ run concurrently (independent reads)
     knn_docs()           ┘
  3. generate_reply()     — only if at least one conversation survived

Any failure along the way turns into "no answer" (``None``); a reply is
never drafted from partial context.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Optional, Sequence

import numpy as np

from cache import QueryCache
from hashing import hash_conversation
from interfaces import DocStore, EmbeddingService, GenerationService, MessageStore, VectorIndex
from models import ConversationDetails, DocHit, Message, QueryEmbedding, ReplyVerdict
from worker import call_with_timeout

logger = logging.getLogger(__name__)


@dataclass
class RetrievalResult:
    query: QueryEmbedding
    conversations: list[ConversationDetails] = field(default_factory=list)
    docs: list[DocHit] = field(default_factory=list)


class RetrievalEngine:

    def __init__(
        self,
        store: MessageStore,
        conversation_index: VectorIndex,
        embedder: EmbeddingService,
        generator: GenerationService,
        *,
        doc_index: Optional[VectorIndex] = None,
        doc_store: Optional[DocStore] = None,
        conversation_k: int = 20,
        doc_k: int = 5,
        embed_timeout: Optional[float] = 60.0,
        generate_timeout: Optional[float] = 120.0,
        hydrate_workers: int = 8,
        cache: Optional[QueryCache] = None,
    ):
        self._store = store
        self._conversation_index = conversation_index
        self._embedder = embedder
        self._generator = generator
        self._doc_index = doc_index
        self._doc_store = doc_store
        self._conversation_k = conversation_k
        self._doc_k = doc_k
        self._embed_timeout = embed_timeout
        self._generate_timeout = generate_timeout
        self._hydrate_workers = hydrate_workers
        self._cache = cache

    @property
    def cache_enabled(self) -> bool:
        return self._cache is not None and self._cache.enabled

    # ── Query ─────────────────────────────────────────────────────

    def embed_query(self, recent: Sequence[Message]) -> QueryEmbedding:
        window_hash = hash_conversation(recent)
        if self._cache is not None:
            cached = self._cache.get(window_hash)
            if cached is not None:
                logger.info(f"Query cache hit: {cached.rephrased!r}")
                return cached

        rephrased, cost = call_with_timeout(
            self._generator.rephrase_query, list(recent), timeout=self._generate_timeout,
        )
        vector = call_with_timeout(
            self._embedder.embed_query, rephrased, timeout=self._embed_timeout,
        )
        query = QueryEmbedding(
            vector=np.asarray(vector, dtype=np.float32).flatten(),
            rephrased=rephrased,
            cost=cost,
        )
        logger.info(f"Rephrased query as {rephrased!r}")

        if self._cache is not None:
            self._cache.put(window_hash, query)
        return query

    # ── KNN ───────────────────────────────────────────────────────

    def knn_conversations(self, vector: np.ndarray, k: Optional[int] = None) -> list[ConversationDetails]:
        """Nearest conversations, hydrated, ascending by distance.

        Index entries whose conversation no longer has any messages are
        dropped.
        """
        hits = self._conversation_index.knn(vector, self._conversation_k if k is None else k)
        if not hits:
            return []

        def _hydrate(hit: tuple[str, float]) -> ConversationDetails:
            conversation_id, distance = hit
            return ConversationDetails(
                conversation_id=conversation_id,
                messages=self._store.get_messages_in_thread(conversation_id),
                distance=distance,
            )

        with ThreadPoolExecutor(
            max_workers=max(1, min(self._hydrate_workers, len(hits))),
            thread_name_prefix="hydrate",
        ) as pool:
            details = list(pool.map(_hydrate, hits))

        kept = [d for d in details if d.messages]
        if len(kept) < len(details):
            logger.info(f"Dropped {len(details) - len(kept)} stale conversation hit(s)")
        return sorted(kept, key=lambda d: d.distance)

    def knn_docs(self, vector: np.ndarray, k: Optional[int] = None) -> list[DocHit]:
        if self._doc_index is None or self._doc_store is None:
            return []
        hits = self._doc_index.knn(vector, self._doc_k if k is None else k)
        if not hits:
            return []
        docs = {d.id: d for d in self._doc_store.get_docs([key for key, _ in hits])}
        return [DocHit(doc=docs[key], distance=dist) for key, dist in hits if key in docs]

    def retrieve(self, recent: Sequence[Message], k: Optional[int] = None) -> RetrievalResult:
        query = self.embed_query(recent)
        with ThreadPoolExecutor(max_workers=2, thread_name_prefix="knn") as pool:
            fut_convs = pool.submit(self.knn_conversations, query.vector, k)
            fut_docs = pool.submit(self.knn_docs, query.vector)
            conversations = fut_convs.result()
            docs = fut_docs.result()
        return RetrievalResult(query=query, conversations=conversations, docs=docs)

    # ── Answer ────────────────────────────────────────────────────

    def answer(self, recent: Sequence[Message], k: Optional[int] = None) -> Optional[ReplyVerdict]:
        """Draft a reply from precedent conversations, or None for "no answer"."""
        if not recent:
            return None
        try:
            result = self.retrieve(recent, k)
        except Exception as e:
            logger.error(f"Retrieval failed, returning no answer: {e}")
            return None
        return self.generate(result, recent)

    def generate(self, result: RetrievalResult, recent: Sequence[Message]) -> Optional[ReplyVerdict]:
        """Run the generator over an existing retrieval result."""
        if not result.conversations:
            logger.info("No precedent conversations found — no answer")
            return None
        try:
            verdict = call_with_timeout(
                self._generator.generate_reply,
                result.conversations, result.docs, list(recent),
                timeout=self._generate_timeout,
            )
        except Exception as e:
            logger.error(f"Generation failed, returning no answer: {e}")
            return None
        verdict.cost += result.query.cost
        return verdict

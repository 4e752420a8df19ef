"""Application context — every long-lived handle, built once and passed down.

    ctx = AppContext.from_settings(settings)
    ctx.conversation_sync.sync("general")
    ctx.close()

Nothing in the other modules reaches for a global store, pool, model or
provider; entry points (main.py, cli.py) build one AppContext and hand
its members to the components that need them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from bot import ChannelWatcher
from cache import QueryCache
from channel_feed import ChannelFeed, LoggingReplySink, WebhookReplySink
from embeddings import SentenceTransformerEmbedder
from interfaces import (
    DocStore, EmbeddingService, GenerationService, HashStore, MessageStore, ReplySink, VectorIndex,
)
from llm import LLMClient, LLMGenerationService, load_provider
from llm.providers import SUPPORTED_PROVIDERS
from message_cache import MessageCache
from pipeline import ConversationSync, DocSync, MessageIngestor
from policy import ReplyPolicy
from retrieval import RetrievalEngine
from worker import BackgroundWorker

logger = logging.getLogger(__name__)

STORE_BACKENDS = ("postgres", "memory")


def validate_settings(settings) -> None:
    """Fail fast on configuration that would break every request."""
    if settings.LLM_PROVIDER.lower() not in SUPPORTED_PROVIDERS:
        raise ValueError(
            f"Unknown LLM_PROVIDER '{settings.LLM_PROVIDER}'. "
            f"Supported: {', '.join(SUPPORTED_PROVIDERS)}"
        )
    if not settings.LLM_API_KEY:
        raise ValueError("LLM_API_KEY is not set")
    if settings.STORE_BACKEND not in STORE_BACKENDS:
        raise ValueError(
            f"Unknown STORE_BACKEND '{settings.STORE_BACKEND}'. "
            f"Supported: {', '.join(STORE_BACKENDS)}"
        )
    if settings.STORE_BACKEND == "postgres" and not (settings.DATABASE_URL or settings.POSTGRES_HOST):
        raise ValueError("No database configured: set DATABASE_URL or POSTGRES_HOST")
    needed = settings.PIPELINE_CONCURRENCY + settings.HYDRATE_WORKERS
    if settings.STORE_BACKEND == "postgres" and settings.DB_POOL_MAX < needed:
        # ThreadedConnectionPool raises instead of blocking when exhausted.
        raise ValueError(
            f"DB_POOL_MAX={settings.DB_POOL_MAX} is below PIPELINE_CONCURRENCY + HYDRATE_WORKERS ({needed})"
        )


def check_embedding_dimension(embedder, expected: int) -> None:
    """The pgvector columns are sized at migration time; the model must match."""
    actual = embedder.dimension()
    if actual != expected:
        raise ValueError(
            f"Embedding model produces {actual}-dim vectors but EMBEDDING_DIMENSION={expected}"
        )


@dataclass
class Stores:
    messages: MessageStore
    conversation_hashes: HashStore
    doc_hashes: HashStore
    conversation_index: VectorIndex
    doc_index: VectorIndex
    docs: DocStore
    database: Optional[object] = None

    @classmethod
    def in_memory(cls, dimension: Optional[int] = None) -> "Stores":
        from vector_store import (
            InMemoryDocStore, InMemoryHashStore, InMemoryMessageStore, InMemoryVectorIndex,
        )
        return cls(
            messages=InMemoryMessageStore(),
            conversation_hashes=InMemoryHashStore(),
            doc_hashes=InMemoryHashStore(),
            conversation_index=InMemoryVectorIndex(dimension, name="conversations"),
            doc_index=InMemoryVectorIndex(dimension, name="docs"),
            docs=InMemoryDocStore(),
        )

    @classmethod
    def postgres(cls, settings) -> "Stores":
        from query_db import (
            Database, PgDocStore, PgHashStore, PgMessageStore, PgVectorIndex,
        )
        db = Database.from_settings(settings)
        return cls(
            messages=PgMessageStore(db),
            conversation_hashes=PgHashStore(db, "conversation_hashes"),
            doc_hashes=PgHashStore(db, "doc_hashes"),
            conversation_index=PgVectorIndex(db, "conversation_embeddings"),
            doc_index=PgVectorIndex(db, "doc_embeddings"),
            docs=PgDocStore(db),
            database=db,
        )

    def close(self) -> None:
        if self.database is not None:
            self.database.close()


@dataclass
class AppContext:
    stores: Stores
    embedder: EmbeddingService
    generator: GenerationService
    feed: ChannelFeed
    sink: ReplySink
    engine: RetrievalEngine
    conversation_sync: ConversationSync
    doc_sync: DocSync
    ingestor: MessageIngestor
    policy: ReplyPolicy
    watcher: ChannelWatcher
    message_cache: MessageCache
    worker: BackgroundWorker = field(default_factory=BackgroundWorker)

    @classmethod
    def build(
        cls,
        settings,
        *,
        stores: Stores,
        embedder: EmbeddingService,
        generator: GenerationService,
        sink: Optional[ReplySink] = None,
        query_cache: Optional[QueryCache] = None,
    ) -> "AppContext":
        """Wire components around already-constructed services."""
        message_cache = MessageCache(settings.MESSAGE_CACHE_DIR)
        feed = ChannelFeed(message_cache)
        if sink is None:
            sink = WebhookReplySink(settings.REPLY_WEBHOOK_URL) if settings.REPLY_WEBHOOK_URL else LoggingReplySink()

        engine = RetrievalEngine(
            stores.messages,
            stores.conversation_index,
            embedder,
            generator,
            doc_index=stores.doc_index,
            doc_store=stores.docs,
            conversation_k=settings.CONVERSATION_K,
            doc_k=settings.DOC_K,
            embed_timeout=settings.EMBED_TIMEOUT,
            generate_timeout=settings.GENERATE_TIMEOUT,
            hydrate_workers=settings.HYDRATE_WORKERS,
            cache=query_cache,
        )
        conversation_sync = ConversationSync(
            stores.messages,
            stores.conversation_index,
            stores.conversation_hashes,
            embedder,
            concurrency=settings.PIPELINE_CONCURRENCY,
            embed_timeout=settings.EMBED_TIMEOUT,
        )
        doc_sync = DocSync(
            stores.docs,
            stores.doc_index,
            stores.doc_hashes,
            embedder,
            concurrency=settings.PIPELINE_CONCURRENCY,
            embed_timeout=settings.EMBED_TIMEOUT,
        )
        ingestor = MessageIngestor(
            stores.messages,
            generator,
            lookback=settings.PARENT_LOOKBACK,
            infer_parents=settings.PARENT_INFERENCE_ENABLED,
            concurrency=settings.PIPELINE_CONCURRENCY,
            generate_timeout=settings.GENERATE_TIMEOUT,
        )
        policy = ReplyPolicy(
            min_helpfulness=settings.REPLY_MIN_HELPFULNESS,
            bot_user_id=settings.BOT_USER_ID,
            fallback_text=settings.REPLY_FALLBACK_TEXT,
        )
        watcher = ChannelWatcher(
            feed, sink, engine, policy, ingestor, conversation_sync,
            recent_window=settings.RECENT_WINDOW,
        )
        return cls(
            stores=stores,
            embedder=embedder,
            generator=generator,
            feed=feed,
            sink=sink,
            engine=engine,
            conversation_sync=conversation_sync,
            doc_sync=doc_sync,
            ingestor=ingestor,
            policy=policy,
            watcher=watcher,
            message_cache=message_cache,
        )

    @classmethod
    def from_settings(cls, settings) -> "AppContext":
        """Validate config, then build real stores, model and LLM client."""
        validate_settings(settings)

        if settings.STORE_BACKEND == "postgres":
            stores = Stores.postgres(settings)
        else:
            logger.warning("STORE_BACKEND=memory — nothing survives a restart")
            stores = Stores.in_memory(settings.EMBEDDING_DIMENSION)

        embedder = SentenceTransformerEmbedder(
            settings.EMBEDDING_MODEL, query_instruction=settings.QUERY_INSTRUCTION,
        )
        if settings.STORE_BACKEND == "postgres":
            check_embedding_dimension(embedder, settings.EMBEDDING_DIMENSION)
        client = LLMClient(
            load_provider(settings),
            input_cost_per_mtok=settings.LLM_INPUT_COST_PER_MTOK,
            output_cost_per_mtok=settings.LLM_OUTPUT_COST_PER_MTOK,
            timeout=settings.GENERATE_TIMEOUT,
        )
        generator = LLMGenerationService(
            client,
            max_response_tokens=settings.MAX_RESPONSE_TOKENS,
            max_parent_tokens=settings.MAX_PARENT_TOKENS,
            max_rephrase_tokens=settings.MAX_REPHRASE_TOKENS,
        )
        query_cache = QueryCache(
            settings.REDIS_URL, enabled=settings.ENABLE_CACHE, ttl=settings.CACHE_TTL,
        )
        logger.info(
            f"Context ready: store={settings.STORE_BACKEND} "
            f"llm={client.provider_name} embeddings={settings.EMBEDDING_MODEL}"
        )
        return cls.build(
            settings, stores=stores, embedder=embedder, generator=generator, query_cache=query_cache,
        )

    def init_storage(self) -> bool:
        """Create tables when running on PostgreSQL; True when storage is usable."""
        if self.stores.database is None:
            return True
        return self.stores.database.init_db()

    def close(self) -> None:
        self.worker.shutdown(wait=True)
        self.stores.close()

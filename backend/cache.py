"""Optional Redis cache for query embeddings — no-op when disabled.

Enable: set ENABLE_CACHE=true and REDIS_URL in .env.
When Redis is unavailable, everything still works — zero impact.

The watch loop re-embeds the same rolling window whenever nothing new
has been said; caching by the window's conversation hash skips both the
rephrase call and the encode.
"""

from __future__ import annotations

import json
import logging
from typing import Optional

import numpy as np

from models import QueryEmbedding

logger = logging.getLogger(__name__)


class QueryCache:
    """Redis-backed ``window hash → QueryEmbedding`` cache."""

    def __init__(self, redis_url: str = "", *, enabled: bool = False, ttl: int = 3600):
        self._ttl = ttl
        self._redis = None
        if not enabled:
            return
        try:
            import redis as _redis_lib  # type: ignore[import-untyped]

            self._redis = _redis_lib.from_url(redis_url, decode_responses=True)
            self._redis.ping()
            logger.info("Redis cache connected")
        except Exception as e:
            logger.warning(f"Redis not available (caching disabled): {e}")
            self._redis = None

    @property
    def enabled(self) -> bool:
        return self._redis is not None

    @staticmethod
    def _key(window_hash: str) -> str:
        return f"threadrecall:query:{window_hash}"

    def get(self, window_hash: str) -> Optional[QueryEmbedding]:
        """Cached query embedding, or None on miss / disabled / Redis error."""
        if self._redis is None:
            return None
        try:
            raw = self._redis.get(self._key(window_hash))
        except Exception as e:
            logger.warning(f"Redis get failed: {e}")
            return None
        if not raw:
            return None
        try:
            data = json.loads(raw)
            return QueryEmbedding(
                vector=np.asarray(data["vector"], dtype=np.float32),
                rephrased=data["rephrased"],
                cost=0.0,
            )
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Corrupt cache entry {window_hash} ignored: {e}")
            return None

    def put(self, window_hash: str, query: QueryEmbedding) -> None:
        if self._redis is None:
            return
        payload = json.dumps({
            "vector": np.asarray(query.vector, dtype=np.float32).tolist(),
            "rephrased": query.rephrased,
        })
        try:
            self._redis.setex(self._key(window_hash), self._ttl, payload)
        except Exception as e:
            logger.warning(f"Redis put failed: {e}")

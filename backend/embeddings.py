"""Local embedding model — no API key required.

Default model: BAAI/bge-base-en-v1.5 (768-dim).  Swap via EMBEDDING_MODEL.

Asymmetric retrieval:
  - Conversations and docs are encoded without a prefix.
  - Queries are encoded with QUERY_INSTRUCTION prepended when set
    (recommended for bge, e5, nomic models).

The model is loaded lazily on first call and held by the service
instance (~1-2s warm-up, then near-instant).
"""

from __future__ import annotations

import logging
import threading
from typing import Sequence

import numpy as np
from sentence_transformers import SentenceTransformer

from interfaces import EmbeddingService
from models import Doc, Message, iso_timestamp

logger = logging.getLogger(__name__)


def format_conversation(messages: Sequence[Message]) -> str:
    """Render a conversation as one transcript, one line per message."""
    lines = []
    for m in messages:
        name = m.author.display_name or m.author.id
        prefix = f"(reply to {m.reply_to}) " if m.reply_to else ""
        lines.append(f"[{iso_timestamp(m.timestamp)}] {name}: {prefix}{m.content}")
    return "\n".join(lines)


def format_doc(doc: Doc) -> str:
    return f"# {doc.file_name}\n\n{doc.body}"


class SentenceTransformerEmbedder(EmbeddingService):

    def __init__(self, model_name: str, *, query_instruction: str = ""):
        self._model_name = model_name
        self._query_instruction = query_instruction
        self._model: SentenceTransformer | None = None
        self._lock = threading.Lock()

    def _get_model(self) -> SentenceTransformer:
        """Lazy-load the SentenceTransformer model (once, even under the pool)."""
        with self._lock:
            if self._model is None:
                logger.info(f"Loading embedding model {self._model_name}")
                self._model = SentenceTransformer(self._model_name)
            return self._model

    def _encode(self, text: str) -> np.ndarray:
        return self._get_model().encode(text, convert_to_numpy=True).astype("float32")

    def embed_conversation(self, messages: Sequence[Message]) -> np.ndarray:
        return self._encode(format_conversation(messages))

    def embed_doc(self, doc: Doc) -> np.ndarray:
        return self._encode(format_doc(doc))

    def embed_query(self, text: str) -> np.ndarray:
        if self._query_instruction:
            text = self._query_instruction + text
        return self._encode(text)

    def dimension(self) -> int:
        """Return the actual embedding dimension of the loaded model."""
        return self._get_model().get_sentence_embedding_dimension()

"""Collaborator contracts the pipeline and retrieval layers depend on.

Concrete implementations:
  - query_db.py      — PostgreSQL + pgvector (persistent)
  - vector_store.py  — in-process fallback (numpy, non-persistent)
  - embeddings.py    — sentence-transformers EmbeddingService
  - llm/generators.py — LLM-backed GenerationService
  - channel_feed.py  — MessageSource / ReplySink

To add a backend: subclass the matching ABC and wire it in context.py.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, Sequence

import numpy as np

from models import (
    Author,
    Doc,
    Message,
    MessageNode,
    ParentGuess,
    QueryEmbedding,
    ReplyVerdict,
    ConversationDetails,
    DocHit,
)


# ═══════════════════════════════════════════════════════════════════════════
#  PERSISTENCE
# ═══════════════════════════════════════════════════════════════════════════

class MessageStore(ABC):
    """Relational rows for users and messages, keyed by id."""

    @abstractmethod
    def upsert_user(self, author: Author) -> None: ...

    @abstractmethod
    def upsert_message(self, message: Message) -> None: ...

    @abstractmethod
    def message_exists(self, message_id: str) -> bool: ...

    @abstractmethod
    def get_messages(self, message_ids: Iterable[str]) -> list[Message]:
        """Hydrate the given ids, oldest first.  Unknown ids are ignored."""
        ...

    @abstractmethod
    def get_messages_in_thread(self, root_id: str) -> list[Message]:
        """Root plus everything that (transitively) replies to it, oldest first."""
        ...

    @abstractmethod
    def get_all_message_nodes(self, channel_id: Optional[str] = None) -> list[MessageNode]:
        """Graph projection of every stored message, oldest first."""
        ...


class HashStore(ABC):
    """Last-embedded fingerprint per unit key."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def upsert(self, key: str, digest: str) -> None: ...


class VectorIndex(ABC):
    """Exactly one vector per key; nearest-neighbour search by L2 distance."""

    @abstractmethod
    def upsert(self, key: str, vector: np.ndarray) -> None: ...

    @abstractmethod
    def delete(self, key: str) -> None: ...

    @abstractmethod
    def knn(self, query: np.ndarray, k: int) -> list[tuple[str, float]]:
        """Up to *k* ``(key, distance)`` pairs, ascending by distance."""
        ...

    def replace(self, key: str, vector: np.ndarray) -> None:
        """Delete-then-insert so the key never holds two vectors."""
        self.delete(key)
        self.upsert(key, vector)


class DocStore(ABC):

    @abstractmethod
    def upsert_doc(self, doc: Doc) -> None: ...

    @abstractmethod
    def get_docs(self, doc_ids: Sequence[str]) -> list[Doc]: ...


# ═══════════════════════════════════════════════════════════════════════════
#  MODEL SERVICES
# ═══════════════════════════════════════════════════════════════════════════

class EmbeddingService(ABC):

    @abstractmethod
    def embed_conversation(self, messages: Sequence[Message]) -> np.ndarray: ...

    @abstractmethod
    def embed_doc(self, doc: Doc) -> np.ndarray: ...

    @abstractmethod
    def embed_query(self, text: str) -> np.ndarray: ...


class GenerationService(ABC):
    """Every call reports its cost so a pass can sum it."""

    @abstractmethod
    def infer_parent(self, window: Sequence[Message], message: Message) -> ParentGuess:
        """Guess which message in *window* the (pointer-less) *message* replies to."""
        ...

    @abstractmethod
    def rephrase_query(self, messages: Sequence[Message]) -> tuple[str, float]:
        """Collapse a rolling window of turns into one canonical question."""
        ...

    @abstractmethod
    def generate_reply(
        self,
        conversations: Sequence[ConversationDetails],
        docs: Sequence[DocHit],
        messages: Sequence[Message],
    ) -> ReplyVerdict: ...


# ═══════════════════════════════════════════════════════════════════════════
#  TRANSPORT
# ═══════════════════════════════════════════════════════════════════════════

class MessageSource(ABC):

    @abstractmethod
    def fetch_recent(self, channel_id: str, limit: int) -> list[Message]:
        """Newest *limit* messages, returned oldest first."""
        ...

    @abstractmethod
    def fetch_all(self, channel_id: str) -> list[Message]: ...

    @abstractmethod
    def subscribe(self, channel_id: Optional[str], on_message: Callable[[Message], None]) -> None:
        """Register a push callback (``None`` = every channel); bot messages are filtered."""
        ...


class ReplySink(ABC):

    @abstractmethod
    def send(self, channel_id: str, text: str, in_reply_to: Optional[str]) -> None: ...

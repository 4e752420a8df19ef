"""In-memory fallback stores — no database required.

Used when STORE_BACKEND=memory and by the test-suite.  Same contracts as
the pgvector-backed classes in query_db.py; vector search is a brute-force
numpy L2 scan.  Nothing here survives a restart.
"""

from __future__ import annotations

import logging
import threading
from typing import Iterable, Optional, Sequence

import numpy as np

from interfaces import DocStore, HashStore, MessageStore, VectorIndex
from models import Author, Doc, Message, MessageNode, to_utc

logger = logging.getLogger(__name__)


def _l2_distances(query: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Euclidean distance between *query* and every row of *matrix*."""
    return np.linalg.norm(matrix - query[np.newaxis, :], axis=1)


def _by_time(messages: Iterable[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: (to_utc(m.timestamp), m.id))


class InMemoryVectorIndex(VectorIndex):
    """Dict of key → float32 vector with exact nearest-neighbour search."""

    def __init__(self, dimension: Optional[int] = None, name: str = "vectors"):
        self._dimension = dimension
        self._name = name
        self._vectors: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def _coerce(self, vector) -> np.ndarray:
        arr = np.asarray(vector, dtype=np.float32).flatten()
        if self._dimension is not None and arr.shape[0] != self._dimension:
            raise ValueError(
                f"{self._name}: expected {self._dimension}-dim vector, got {arr.shape[0]}"
            )
        return arr

    def upsert(self, key: str, vector) -> None:
        arr = self._coerce(vector)
        with self._lock:
            self._vectors[key] = arr

    def delete(self, key: str) -> None:
        with self._lock:
            self._vectors.pop(key, None)

    def replace(self, key: str, vector) -> None:
        arr = self._coerce(vector)
        with self._lock:
            self._vectors.pop(key, None)
            self._vectors[key] = arr

    def knn(self, query, k: int) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        q = self._coerce(query)
        with self._lock:
            if not self._vectors:
                return []
            keys = list(self._vectors)
            matrix = np.stack([self._vectors[key] for key in keys])
        dists = _l2_distances(q, matrix)
        order = sorted(range(len(keys)), key=lambda i: (float(dists[i]), keys[i]))[:k]
        return [(keys[i], float(dists[i])) for i in order]

    def get(self, key: str) -> Optional[np.ndarray]:
        with self._lock:
            return self._vectors.get(key)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._vectors

    def __len__(self) -> int:
        with self._lock:
            return len(self._vectors)


class InMemoryHashStore(HashStore):

    def __init__(self):
        self._hashes: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._hashes.get(key)

    def upsert(self, key: str, digest: str) -> None:
        with self._lock:
            self._hashes[key] = digest


class InMemoryMessageStore(MessageStore):

    def __init__(self):
        self._users: dict[str, Author] = {}
        self._messages: dict[str, Message] = {}
        self._lock = threading.Lock()

    def upsert_user(self, author: Author) -> None:
        with self._lock:
            self._users[author.id] = author

    def upsert_message(self, message: Message) -> None:
        with self._lock:
            self._messages[message.id] = message

    def message_exists(self, message_id: str) -> bool:
        with self._lock:
            return message_id in self._messages

    def get_messages(self, message_ids: Iterable[str]) -> list[Message]:
        with self._lock:
            found = [self._messages[mid] for mid in set(message_ids) if mid in self._messages]
        return _by_time(found)

    def get_messages_in_thread(self, root_id: str) -> list[Message]:
        with self._lock:
            if root_id not in self._messages:
                return []
            children: dict[str, list[str]] = {}
            for m in self._messages.values():
                if m.reply_to:
                    children.setdefault(m.reply_to, []).append(m.id)

            seen = {root_id}
            frontier = [root_id]
            while frontier:
                current = frontier.pop()
                for child in children.get(current, ()):
                    if child not in seen:
                        seen.add(child)
                        frontier.append(child)
            found = [self._messages[mid] for mid in seen]
        return _by_time(found)

    def get_all_message_nodes(self, channel_id: Optional[str] = None) -> list[MessageNode]:
        with self._lock:
            msgs = [
                m for m in self._messages.values()
                if channel_id is None or m.channel_id == channel_id
            ]
        return [MessageNode(m.id, m.reply_to, m.timestamp) for m in _by_time(msgs)]


class InMemoryDocStore(DocStore):

    def __init__(self):
        self._docs: dict[str, Doc] = {}
        self._lock = threading.Lock()

    def upsert_doc(self, doc: Doc) -> None:
        with self._lock:
            self._docs[doc.id] = doc

    def get_docs(self, doc_ids: Sequence[str]) -> list[Doc]:
        with self._lock:
            return [self._docs[d] for d in doc_ids if d in self._docs]

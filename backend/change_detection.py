"""Change detection — the gate in front of every embedding call."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

from hashing import hash_conversation
from interfaces import HashStore

T = TypeVar("T")


@dataclass(frozen=True)
class ChangeDecision:
    changed: bool
    new_hash: str
    stored_hash: Optional[str] = None


def needs_update(new_hash: str, stored_hash: Optional[str]) -> ChangeDecision:
    return ChangeDecision(
        changed=stored_hash is None or stored_hash != new_hash,
        new_hash=new_hash,
        stored_hash=stored_hash,
    )


class ChangeDetector:
    """Compares a unit's current fingerprint with the last recorded one.

    ``fingerprint`` defaults to :func:`hashing.hash_conversation`; doc
    passes use :func:`hashing.hash_doc` with their own HashStore.
    """

    def __init__(
        self,
        hashes: HashStore,
        fingerprint: Callable[[T], str] = hash_conversation,
    ):
        self._hashes = hashes
        self._fingerprint = fingerprint

    def check(self, key: str, content: T) -> ChangeDecision:
        return needs_update(self._fingerprint(content), self._hashes.get(key))

    def record(self, key: str, digest: str) -> None:
        self._hashes.upsert(key, digest)

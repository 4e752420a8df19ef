"""Conversation grouping — reply-chain forest → conversations.

Each message follows its ``reply_to`` pointers up to a root: a message
with no parent, a message whose parent is not in the node set, or the
point where a cycle closes on itself.  Every message on a walked path
is memoised with the root it reached, so each pointer is followed at
most once per pass and long chains never touch the call stack.

Public API:
    find_root()            — resolve one message's root (iterative, memoised)
    group_conversations()  — partition nodes into Conversation records
    ConversationGrouper    — store-backed wrapper used by the pipeline
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from interfaces import MessageStore
from models import Conversation, MessageNode, to_utc

logger = logging.getLogger(__name__)


def find_root(
    message_id: str,
    nodes: dict[str, MessageNode],
    memo: dict[str, str],
) -> str:
    """Return the conversation root for *message_id*.

    A dangling ``reply_to`` makes the message holding it the root.  On a
    cycle, the id at which the walk revisits its own path is the root.
    """
    path: list[str] = []
    on_path: set[str] = set()
    current = message_id

    while True:
        if current in memo:
            root = memo[current]
            break
        if current in on_path:
            root = current
            break
        on_path.add(current)
        path.append(current)

        node = nodes.get(current)
        parent = node.reply_to if node is not None else None
        if not parent or parent not in nodes:
            root = current
            break
        current = parent

    for mid in path:
        memo[mid] = root
    return root


def group_conversations(nodes: Iterable[MessageNode]) -> list[Conversation]:
    """Partition *nodes* into conversations, sorted by start time."""
    by_id: dict[str, MessageNode] = {}
    for node in nodes:
        by_id[node.id] = node

    memo: dict[str, str] = {}
    members: dict[str, set[str]] = {}
    bounds: dict[str, tuple[datetime, datetime]] = {}

    for node in by_id.values():
        root = find_root(node.id, by_id, memo)
        ts = to_utc(node.timestamp)

        members.setdefault(root, set()).add(node.id)
        if root in bounds:
            start, end = bounds[root]
            bounds[root] = (min(start, ts), max(end, ts))
        else:
            bounds[root] = (ts, ts)

    conversations = [
        Conversation(
            id=root,
            message_ids=frozenset(ids),
            start_time=bounds[root][0],
            end_time=bounds[root][1],
        )
        for root, ids in members.items()
    ]
    conversations.sort(key=lambda c: (c.start_time, c.id))
    return conversations


class ConversationGrouper:
    """Reads the graph projection from a MessageStore and groups it."""

    def __init__(self, store: MessageStore):
        self._store = store

    def group(self, channel_id: Optional[str] = None) -> list[Conversation]:
        # A store failure here is pass-level: let it propagate.
        nodes = self._store.get_all_message_nodes(channel_id)
        conversations = group_conversations(nodes)
        logger.info(
            f"Grouped {len(nodes)} messages into {len(conversations)} conversations"
            f"{f' (channel={channel_id})' if channel_id else ''}"
        )
        return conversations

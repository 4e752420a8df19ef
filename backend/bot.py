"""Watch loop — react to each new channel message.

For every non-bot message pushed into the feed:
  1. fetch the recent window and ask the retrieval engine for a verdict
  2. let the reply policy decide; send at most one reply
  3. ingest the channel's full history (parent inference included)
  4. re-embed the conversations whose hash changed

Steps 3-4 run even when no reply was sent, so the index keeps up with
the channel.  They hold the watcher's index lock: handlers dispatched
onto a thread pool answer in parallel but index one at a time, so no
two passes ever embed the same conversation concurrently.  Nothing
raised here escapes the handler.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from interfaces import MessageSource, ReplySink
from models import Author, Message
from pipeline import ConversationSync, MessageIngestor, PassReport
from policy import ReplyDecision, ReplyPolicy
from retrieval import RetrievalEngine

logger = logging.getLogger(__name__)

OPERATOR = Author(id="operator", display_name="operator")


def query_window(
    source: MessageSource,
    channel_id: str,
    text: str,
    *,
    window: int = 10,
    author: Author = OPERATOR,
) -> list[Message]:
    """Recent channel history plus a synthetic message carrying *text*.

    Used by the CLI and HTTP ``query`` surfaces to exercise the read path
    without posting anything to the channel.
    """
    recent = source.fetch_recent(channel_id, window) if channel_id else []
    synthetic = Message(
        id=f"query-{uuid.uuid4().hex[:12]}",
        content=text,
        timestamp=datetime.now(timezone.utc),
        author=author,
        channel_id=channel_id,
    )
    return [*recent, synthetic][-window:] if window > 0 else [synthetic]


@dataclass
class WatchOutcome:
    """What one handler invocation did (returned for tests and the API)."""

    message_id: str
    decision: Optional[ReplyDecision] = None
    sent: bool = False
    ingest: Optional[PassReport] = None
    sync: Optional[PassReport] = None
    errors: list[str] = field(default_factory=list)


class ChannelWatcher:

    def __init__(
        self,
        source: MessageSource,
        sink: ReplySink,
        engine: RetrievalEngine,
        policy: ReplyPolicy,
        ingestor: MessageIngestor,
        conversation_sync: ConversationSync,
        *,
        recent_window: int = 10,
    ):
        self._source = source
        self._sink = sink
        self._engine = engine
        self._policy = policy
        self._ingestor = ingestor
        self._sync = conversation_sync
        self._recent_window = recent_window
        self._index_lock = threading.Lock()

    def watch(self, channel_id: Optional[str] = None, dispatch=None) -> None:
        """Subscribe to *channel_id* (None = every channel).

        *dispatch* receives ``(handler, message)``; pass a
        BackgroundWorker's ``submit`` to keep the feed non-blocking.
        """
        if dispatch is None:
            self._source.subscribe(channel_id, self.handle)
        else:
            self._source.subscribe(channel_id, lambda m: dispatch(self.handle, m))
        logger.info(f"Watching channel {channel_id or '*'}")

    def handle(self, message: Message) -> WatchOutcome:
        outcome = WatchOutcome(message_id=message.id)
        if message.author.is_bot:
            return outcome

        channel = message.channel_id
        try:
            self._reply(message, outcome)
        except Exception as e:
            outcome.errors.append(f"reply: {e}")
            logger.error(f"Reply step failed for {message.id}: {e}")

        try:
            with self._index_lock:
                outcome.ingest = self._ingestor.ingest(self._source.fetch_all(channel))
                outcome.sync = self._sync.sync(channel)
        except Exception as e:
            outcome.errors.append(f"index: {e}")
            logger.error(f"Indexing step failed for channel {channel}: {e}")
        return outcome

    def sync(self, channel_id: Optional[str] = None) -> PassReport:
        """Conversation pass that waits for any in-flight watch-loop indexing."""
        with self._index_lock:
            return self._sync.sync(channel_id)

    def _reply(self, message: Message, outcome: WatchOutcome) -> None:
        recent = self._source.fetch_recent(message.channel_id, self._recent_window)
        if not any(m.id == message.id for m in recent):
            recent = [*recent, message][-self._recent_window:]
        trigger = recent[-1]

        verdict = self._engine.answer(recent)
        if verdict is not None:
            logger.info(
                f"Verdict for {trigger.id}: shouldReply={verdict.should_reply} "
                f"helpfulness={verdict.helpfulness} cost=${verdict.cost:.4f}"
            )
            logger.debug(f"Internal thoughts: {verdict.internal_thoughts}")

        decision = self._policy.decide(verdict, trigger)
        outcome.decision = decision
        if not decision.reply:
            logger.info(f"No reply for {trigger.id} ({', '.join(decision.triggers) or 'not helpful'})")
            return

        self._sink.send(decision.channel_id, decision.text, decision.in_reply_to)
        outcome.sent = True

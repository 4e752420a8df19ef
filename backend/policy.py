"""Reply policy — deterministic rules over the generator's verdict.

The generator only *suggests*; this module decides whether a reply is
actually sent.  Thresholds come from settings, never from prompts.

    reply  ⇔  (shouldReply ∧ helpfulness ≥ min_helpfulness)  ∨  bot mentioned

Exactly one decision per triggering message.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

from models import Message, ReplyVerdict


@dataclass
class ReplyDecision:
    """What to do with one triggering message."""

    reply: bool = False
    text: str = ""
    in_reply_to: Optional[str] = None
    channel_id: str = ""
    triggers: list[str] = field(default_factory=list)


def mentions_bot(content: str, bot_user_id: str) -> bool:
    """True when *content* contains ``<@id>``, ``<@!id>`` or the bare id."""
    if not bot_user_id:
        return False
    if re.search(rf"<@!?{re.escape(bot_user_id)}>", content):
        return True
    return re.search(rf"(?<!\d){re.escape(bot_user_id)}(?!\d)", content) is not None


class ReplyPolicy:

    def __init__(
        self,
        *,
        min_helpfulness: float = 7.0,
        bot_user_id: str = "",
        fallback_text: str = "(no helpful message found)",
    ):
        self.min_helpfulness = min_helpfulness
        self.bot_user_id = bot_user_id
        self.fallback_text = fallback_text

    def decide(self, verdict: Optional[ReplyVerdict], trigger: Message) -> ReplyDecision:
        decision = ReplyDecision(in_reply_to=trigger.id, channel_id=trigger.channel_id)

        if verdict is None:
            decision.triggers.append("no_answer")
            return decision

        if verdict.should_reply and verdict.helpfulness >= self.min_helpfulness:
            decision.reply = True
            decision.triggers.append("helpful")
        elif verdict.should_reply:
            decision.triggers.append("below_threshold")

        if mentions_bot(trigger.content, self.bot_user_id):
            decision.reply = True
            decision.triggers.append("mentioned")

        if decision.reply:
            decision.text = verdict.reply.strip() or self.fallback_text
        return decision

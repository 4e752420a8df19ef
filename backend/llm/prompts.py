"""All prompt templates — single source of truth for LLM instructions.

Every string that becomes a ``system`` or ``user`` message lives here.
No module in the project should hard-code prompt text.
"""

# ═══════════════════════════════════════════════════════════════════════════
#  REPLY-PARENT INFERENCE
# ═══════════════════════════════════════════════════════════════════════════

PARENT_PROMPT = """\
You reconstruct reply threads in a chat channel.  The last message below
was posted without an explicit reply reference.  Decide which ONE earlier
message it is answering or continuing, if any.

Rules:
1. Only choose from the message ids listed under "Earlier messages".
2. If the message starts a new topic, or you are not confident, answer NULL.
3. Output EXACTLY the chosen message id, or the word NULL — nothing else.

Earlier messages:
{window}

Message to place:
{message}
"""


# ═══════════════════════════════════════════════════════════════════════════
#  QUERY REPHRASING
# ═══════════════════════════════════════════════════════════════════════════

REPHRASE_PROMPT = """\
Below are the most recent messages in a support channel, oldest first.
Rewrite what the LAST speaker is asking or trying to do as one
self-contained question, resolving pronouns and references from the
earlier messages.  Keep product names, error messages and code
identifiers verbatim.

Return only the rewritten question — no preamble, no quotes.

Messages:
{messages}
"""


# ═══════════════════════════════════════════════════════════════════════════
#  HELPFUL REPLY FROM PAST CONVERSATIONS
# ═══════════════════════════════════════════════════════════════════════════

HELPFUL_REPLY_SYSTEM = """\
You are a helpful member of a community chat.  You are given past
conversations from the same community that look similar to what is
being discussed now, plus relevant documentation pages.  Decide whether
anything in that material would genuinely help the people talking now,
and if so, write the message you would post.

Output EXACTLY one JSON object — nothing else:
{"internalThoughts": "<your reasoning>",
 "reply": "<the message to post, or empty>",
 "helpfulness": <0-10>,
 "shouldReply": <true|false>}

Rules:
1. helpfulness measures how much the reply would actually help (0 = not at all).
2. Set shouldReply to false when the current discussion is already resolved,
   is small talk, or when the past material is not relevant.
3. Never invent facts that are not supported by the material.
4. Keep the reply short and conversational; link docs by file name when useful.
"""

HELPFUL_REPLY_USER = """\
Past conversations (closest first):
{conversations}

Documentation:
{docs}

Current discussion (oldest first):
{messages}
"""

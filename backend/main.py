"""FastAPI application — ingest, query and sync over HTTP.

Architecture layers:
  1. Settings        (settings.py)        — centralized configuration
  2. Context         (context.py)         — explicit handles for every store/service
  3. Channel feed    (channel_feed.py)    — in-process message source + reply sinks
  4. Watch loop      (bot.py)             — answer → policy → reply → ingest → sync
  5. Retrieval       (retrieval.py)       — rephrase, KNN, hydrate, generate
  6. Pipeline        (pipeline.py)        — incremental, hash-gated re-embedding
  7. Database        (query_db.py)        — PostgreSQL + pgvector stores
  8. LLM package     (llm/)               — providers, prompts, structured output

Endpoints:
  POST /messages   push one channel message; the watch loop runs in the background
  POST /query      run the read path for a channel window (+ optional query text)
  POST /sync       group + re-embed changed conversations, return the pass report
  GET  /health     store backend and index status
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from bot import query_window
from context import AppContext
from models import Message
from settings import settings

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
#  Request / response models
# ---------------------------------------------------------------------------

class UserIn(BaseModel):
    id: str
    displayName: str = ""
    bot: bool = False


class MessageIn(BaseModel):
    id: str
    content: str = ""
    timestamp: datetime
    user: UserIn
    channelId: str
    replyTo: Optional[str] = None

    def to_message(self) -> Message:
        return Message.from_dict(self.model_dump())


class QueryRequest(BaseModel):
    channelId: str = ""
    text: Optional[str] = None
    messages: Optional[List[MessageIn]] = None


class SyncRequest(BaseModel):
    channelId: Optional[str] = None


# ---------------------------------------------------------------------------
#  App factory
# ---------------------------------------------------------------------------

def create_app(context: Optional[AppContext] = None) -> FastAPI:
    """Build the app.  Without *context*, one is built from settings at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):  # noqa: D401
        owned = context is None
        ctx = AppContext.from_settings(settings) if owned else context
        if not ctx.init_storage():
            raise RuntimeError("Storage not available — is PostgreSQL running?")
        ctx.watcher.watch(None, dispatch=ctx.worker.submit)
        app.state.ctx = ctx

        yield  # ← application runs here

        if owned:
            ctx.close()

    app = FastAPI(title="threadrecall", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    def _ctx(request: Request) -> AppContext:
        return request.app.state.ctx

    @app.post("/messages")
    def push_message(req: MessageIn, request: Request):
        message = req.to_message()
        dispatched = _ctx(request).feed.push(message)
        return {"accepted": True, "id": message.id, "dispatched": dispatched}

    @app.post("/query")
    def query(req: QueryRequest, request: Request):
        ctx = _ctx(request)
        if req.messages:
            recent = [m.to_message() for m in req.messages]
        elif req.text:
            recent = query_window(ctx.feed, req.channelId, req.text, window=settings.RECENT_WINDOW)
        elif req.channelId:
            recent = ctx.feed.fetch_recent(req.channelId, settings.RECENT_WINDOW)
        else:
            raise HTTPException(400, "Provide messages, text or channelId")
        if not recent:
            raise HTTPException(404, "No messages in channel")

        verdict = ctx.engine.answer(recent)
        decision = ctx.policy.decide(verdict, recent[-1])
        return {
            "answered": verdict is not None,
            "reply": verdict.reply if verdict else None,
            "helpfulness": verdict.helpfulness if verdict else None,
            "shouldReply": verdict.should_reply if verdict else None,
            "internalThoughts": verdict.internal_thoughts if verdict else None,
            "cost": verdict.cost if verdict else 0.0,
            "wouldReply": decision.reply,
            "triggers": decision.triggers,
        }

    @app.post("/sync")
    def sync(req: SyncRequest, request: Request):
        try:
            report = _ctx(request).watcher.sync(req.channelId)
        except Exception as exc:
            logger.error(f"Sync failed: {exc}")
            raise HTTPException(status_code=500, detail=str(exc))
        return report.to_dict()

    @app.get("/health")
    def health_check(request: Request):
        """Returns the store backend and whether the query cache is live."""
        ctx = _ctx(request)
        return {
            "status": "ok",
            "store": "postgres" if ctx.stores.database is not None else "memory",
            "query_cache": ctx.engine.cache_enabled,
        }

    return app


app = create_app()

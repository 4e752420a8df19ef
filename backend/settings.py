"""Centralized configuration — every tunable in one place.

Environment variables override defaults. Import anywhere:

    from settings import settings

All values are frozen at startup. To change, update .env and restart.
Components take the values they need as constructor arguments, so
tests never have to touch the environment.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root (one level above backend/)
_project_root = Path(__file__).resolve().parent.parent
load_dotenv(_project_root / ".env")


# ── Helpers ───────────────────────────────────────────────────────────────

def _env(key: str, default: str = "") -> str:
    return os.getenv(key, default)


def _env_int(key: str, default: int = 0) -> int:
    return int(os.getenv(key, str(default)))


def _env_float(key: str, default: float = 0.0) -> float:
    return float(os.getenv(key, str(default)))


def _env_bool(key: str, default: bool = False) -> bool:
    return os.getenv(key, str(default)).lower() in ("true", "1", "yes")


# ── Settings ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    """Application settings.  Immutable after creation."""

    # ── LLM Provider ──────────────────────────────────────────────
    # Supported: openai, anthropic
    LLM_PROVIDER: str = _env("LLM_PROVIDER", "anthropic")
    LLM_API_KEY: str = _env("LLM_API_KEY", _env("ANTHROPIC_API_KEY"))
    LLM_MODEL: str = _env("LLM_MODEL")
    # Empty LLM_MODEL → each provider picks its own default.
    LLM_BASE_URL: str = _env("LLM_BASE_URL")
    # USD per million tokens, used to report the running cost of a pass.
    LLM_INPUT_COST_PER_MTOK: float = _env_float("LLM_INPUT_COST_PER_MTOK", 3.0)
    LLM_OUTPUT_COST_PER_MTOK: float = _env_float("LLM_OUTPUT_COST_PER_MTOK", 15.0)
    MAX_RESPONSE_TOKENS: int = _env_int("MAX_RESPONSE_TOKENS", 1024)
    MAX_PARENT_TOKENS: int = 40
    MAX_REPHRASE_TOKENS: int = 200

    # ── Embeddings ────────────────────────────────────────────────
    # BAAI/bge-base-en-v1.5: 768-dim, runs locally, no API key.
    EMBEDDING_MODEL: str = _env("EMBEDDING_MODEL", "BAAI/bge-base-en-v1.5")
    EMBEDDING_DIMENSION: int = _env_int("EMBEDDING_DIMENSION", 768)
    # Optional query prefix for asymmetric retrieval models (bge, e5, nomic).
    QUERY_INSTRUCTION: str = _env("QUERY_INSTRUCTION", "")

    # ── Pipeline ──────────────────────────────────────────────────
    PIPELINE_CONCURRENCY: int = _env_int("PIPELINE_CONCURRENCY", 20)
    # Per-call timeouts (seconds) for embedding / generation calls.
    EMBED_TIMEOUT: float = _env_float("EMBED_TIMEOUT", 60.0)
    GENERATE_TIMEOUT: float = _env_float("GENERATE_TIMEOUT", 120.0)
    # How many preceding channel messages the parent-inference step sees.
    PARENT_LOOKBACK: int = _env_int("PARENT_LOOKBACK", 15)
    PARENT_INFERENCE_ENABLED: bool = _env_bool("PARENT_INFERENCE_ENABLED", True)

    # ── Retrieval ─────────────────────────────────────────────────
    CONVERSATION_K: int = _env_int("CONVERSATION_K", 20)
    # Parallel thread loads per query; each holds one DB connection.
    HYDRATE_WORKERS: int = _env_int("HYDRATE_WORKERS", 8)
    DOC_K: int = _env_int("DOC_K", 5)
    # Rolling window of recent channel messages used to build the query.
    RECENT_WINDOW: int = _env_int("RECENT_WINDOW", 10)

    # ── Reply policy ──────────────────────────────────────────────
    REPLY_MIN_HELPFULNESS: float = _env_float("REPLY_MIN_HELPFULNESS", 7.0)
    BOT_USER_ID: str = _env("BOT_USER_ID")
    REPLY_FALLBACK_TEXT: str = _env("REPLY_FALLBACK_TEXT", "(no helpful message found)")
    # Outgoing replies are POSTed here; empty → replies are only logged.
    REPLY_WEBHOOK_URL: str = _env("REPLY_WEBHOOK_URL")

    # ── Local mirror / docs ───────────────────────────────────────
    MESSAGE_CACHE_DIR: str = _env("MESSAGE_CACHE_DIR", str(_project_root / "cache"))
    DOCS_DIR: str = _env("DOCS_DIR", str(_project_root / "docs"))

    # ── Database (PostgreSQL + pgvector) ──────────────────────────
    # "postgres" → persistent stores; "memory" → in-process fallback.
    STORE_BACKEND: str = _env("STORE_BACKEND", "postgres")
    DATABASE_URL: str = _env("DATABASE_URL")
    POSTGRES_HOST: str = _env("POSTGRES_HOST", "localhost")
    POSTGRES_PORT: int = _env_int("POSTGRES_PORT", 55432)
    POSTGRES_DB: str = _env("POSTGRES_DB", "threadrecall")
    POSTGRES_USER: str = _env("POSTGRES_USER", "root")
    POSTGRES_PASSWORD: str = _env("POSTGRES_PASSWORD", "password")
    DB_POOL_MIN: int = _env_int("DB_POOL_MIN", 1)
    # Must cover PIPELINE_CONCURRENCY + HYDRATE_WORKERS (checked at startup).
    DB_POOL_MAX: int = _env_int("DB_POOL_MAX", 30)

    # ── Cache (Optional Redis) ────────────────────────────────────
    ENABLE_CACHE: bool = _env_bool("ENABLE_CACHE", False)
    REDIS_URL: str = _env("REDIS_URL", "redis://localhost:6379/0")
    CACHE_TTL: int = _env_int("CACHE_TTL", 3600)

    # ── Server ────────────────────────────────────────────────────
    HOST: str = _env("HOST", "0.0.0.0")
    PORT: int = _env_int("PORT", 8000)
    LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")


settings = Settings()

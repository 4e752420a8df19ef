"""PostgreSQL + pgvector persistence layer.

Tables:
  - users, messages                          — raw message log (relational rows)
  - conversation_hashes / doc_hashes         — last-embedded fingerprint per unit
  - conversation_embeddings / doc_embeddings — one pgvector row per key
  - docs                                     — documentation pages

Connection pooling via psycopg2 ThreadedConnectionPool (pipeline workers
share it).  DATABASE_URL takes priority over individual POSTGRES_* values.

Every store method logs and re-raises on failure: the pipeline decides
whether an error is unit-level or pass-level.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional, Sequence
from urllib.parse import urlparse

import numpy as np
import psycopg2
from psycopg2 import pool

from interfaces import DocStore, HashStore, MessageStore, VectorIndex
from models import Author, Doc, Message, MessageNode, to_utc

logger = logging.getLogger(__name__)


def _to_list(vector) -> list[float]:
    return np.asarray(vector, dtype=np.float32).flatten().tolist()


def db_config(settings) -> dict:
    """Connection kwargs — DATABASE_URL takes priority, falls back to POSTGRES_*."""
    if settings.DATABASE_URL:
        p = urlparse(settings.DATABASE_URL)
        return {
            "host": p.hostname or "localhost",
            "port": p.port or 5432,
            "database": (p.path or "/threadrecall").lstrip("/"),
            "user": p.username or "root",
            "password": p.password or "password",
        }
    return {
        "host": settings.POSTGRES_HOST,
        "port": settings.POSTGRES_PORT,
        "database": settings.POSTGRES_DB,
        "user": settings.POSTGRES_USER,
        "password": settings.POSTGRES_PASSWORD,
    }


# ═══════════════════════════════════════════════════════════════════
#  CONNECTION HANDLE
# ═══════════════════════════════════════════════════════════════════

class Database:
    """Owns one connection pool.  Pass it explicitly to each store."""

    def __init__(self, config: dict, *, min_conn: int = 1, max_conn: int = 25, dimension: int = 768):
        self._config = config
        self._min_conn = min_conn
        self._max_conn = max_conn
        self.dimension = dimension
        self._pool: pool.ThreadedConnectionPool | None = None

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(
            db_config(settings),
            min_conn=settings.DB_POOL_MIN,
            max_conn=settings.DB_POOL_MAX,
            dimension=settings.EMBEDDING_DIMENSION,
        )

    def _get_pool(self) -> pool.ThreadedConnectionPool:
        if self._pool is None or self._pool.closed:
            self._pool = pool.ThreadedConnectionPool(
                minconn=self._min_conn,
                maxconn=self._max_conn,
                **self._config,
            )
        return self._pool

    def get_connection(self):
        """Get a pooled connection. Caller must call put_connection() when done."""
        return self._get_pool().getconn()

    def put_connection(self, conn) -> None:
        """Return a connection to the pool, rolling back any dirty transaction first."""
        if conn is None:
            return
        try:
            if conn.status != psycopg2.extensions.STATUS_READY:
                conn.rollback()
        except psycopg2.Error as e:
            logger.warning(f"Rollback on release failed: {e}")
        self._get_pool().putconn(conn)

    def close(self) -> None:
        if self._pool is not None and not self._pool.closed:
            self._pool.closeall()

    # ── Schema ────────────────────────────────────────────────────

    def init_db(self) -> bool:
        """Create all tables.  Returns False when the database is unreachable."""
        conn = None
        dim = int(self.dimension)
        try:
            conn = psycopg2.connect(**self._config)
            conn.autocommit = True
            cur = conn.cursor()

            cur.execute("CREATE EXTENSION IF NOT EXISTS vector;")

            cur.execute("""
                CREATE TABLE IF NOT EXISTS users (
                    id            TEXT PRIMARY KEY,
                    display_name  TEXT NOT NULL,
                    is_bot        BOOLEAN DEFAULT FALSE
                );
            """)

            # reply_to has no FK: newest-first ingestion stores replies before parents.
            cur.execute("""
                CREATE TABLE IF NOT EXISTS messages (
                    id          TEXT PRIMARY KEY,
                    content     TEXT NOT NULL,
                    timestamp   TIMESTAMPTZ NOT NULL,
                    user_id     TEXT NOT NULL REFERENCES users(id),
                    reply_to    TEXT,
                    channel_id  TEXT NOT NULL
                );
            """)
            cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_reply_to ON messages (reply_to);")
            cur.execute("CREATE INDEX IF NOT EXISTS idx_messages_channel_ts ON messages (channel_id, timestamp);")

            for table in ("conversation_hashes", "doc_hashes"):
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        key   TEXT PRIMARY KEY,
                        hash  TEXT NOT NULL
                    );
                """)

            cur.execute("""
                CREATE TABLE IF NOT EXISTS docs (
                    id         TEXT PRIMARY KEY,
                    file_name  TEXT NOT NULL,
                    body       TEXT NOT NULL
                );
            """)

            # NOTE: changing EMBEDDING_DIMENSION on an existing DB requires
            # dropping these tables (vector size is part of the column type).
            for table in ("conversation_embeddings", "doc_embeddings"):
                cur.execute(f"""
                    CREATE TABLE IF NOT EXISTS {table} (
                        key        TEXT PRIMARY KEY,
                        embedding  vector({dim}) NOT NULL
                    );
                """)
                cur.execute(
                    f"CREATE INDEX IF NOT EXISTS idx_{table}_hnsw "
                    f"ON {table} USING hnsw (embedding vector_l2_ops);"
                )

            cur.close()
            logger.info("Database schema ready")
            return True
        except psycopg2.Error as e:
            logger.error(f"Database init failed: {e}")
            return False
        finally:
            if conn is not None:
                conn.close()


_HASH_TABLES = {"conversation_hashes", "doc_hashes"}
_VECTOR_TABLES = {"conversation_embeddings", "doc_embeddings"}

_MESSAGE_COLUMNS = """
    m.id, m.content, m.timestamp, m.user_id,
    COALESCE(u.display_name, ''), COALESCE(u.is_bot, FALSE),
    m.reply_to, m.channel_id
"""


def _row_to_message(r) -> Message:
    return Message(
        id=r[0],
        content=r[1],
        timestamp=to_utc(r[2]),
        author=Author(id=r[3], display_name=r[4], is_bot=bool(r[5])),
        reply_to=r[6],
        channel_id=r[7],
    )


# ═══════════════════════════════════════════════════════════════════
#  MESSAGES & USERS
# ═══════════════════════════════════════════════════════════════════

class PgMessageStore(MessageStore):

    def __init__(self, db: Database):
        self._db = db

    def upsert_user(self, author: Author) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO users (id, display_name, is_bot) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET display_name = EXCLUDED.display_name, is_bot = EXCLUDED.is_bot;
            """, (author.id, author.display_name, author.is_bot))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error storing user {author.id}: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def upsert_message(self, message: Message) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO messages (id, content, timestamp, user_id, reply_to, channel_id)
                VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (id) DO UPDATE SET
                    content = EXCLUDED.content,
                    timestamp = EXCLUDED.timestamp,
                    user_id = EXCLUDED.user_id,
                    reply_to = EXCLUDED.reply_to,
                    channel_id = EXCLUDED.channel_id;
            """, (message.id, message.content, to_utc(message.timestamp),
                  message.author.id, message.reply_to, message.channel_id))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error storing message {message.id}: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def message_exists(self, message_id: str) -> bool:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute("SELECT 1 FROM messages WHERE id = %s;", (message_id,))
            found = cur.fetchone() is not None
            cur.close()
            return found
        except Exception as e:
            logger.error(f"Error checking message {message_id}: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def get_messages(self, message_ids: Iterable[str]) -> list[Message]:
        ids = list(set(message_ids))
        if not ids:
            return []
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"""
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN users u ON u.id = m.user_id
                WHERE m.id = ANY(%s)
                ORDER BY m.timestamp ASC, m.id ASC;
            """, (ids,))
            rows = cur.fetchall()
            cur.close()
            return [_row_to_message(r) for r in rows]
        except Exception as e:
            logger.error(f"Error hydrating {len(ids)} messages: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def get_messages_in_thread(self, root_id: str) -> list[Message]:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            # UNION (not UNION ALL) stops the recursion on reply cycles.
            cur.execute(f"""
                WITH RECURSIVE thread(id) AS (
                    SELECT id FROM messages WHERE id = %s
                    UNION
                    SELECT m.id FROM messages m JOIN thread t ON m.reply_to = t.id
                )
                SELECT {_MESSAGE_COLUMNS}
                FROM messages m LEFT JOIN users u ON u.id = m.user_id
                WHERE m.id IN (SELECT id FROM thread)
                ORDER BY m.timestamp ASC, m.id ASC;
            """, (root_id,))
            rows = cur.fetchall()
            cur.close()
            return [_row_to_message(r) for r in rows]
        except Exception as e:
            logger.error(f"Error loading thread {root_id}: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def get_all_message_nodes(self, channel_id: Optional[str] = None) -> list[MessageNode]:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            if channel_id:
                cur.execute("""
                    SELECT id, reply_to, timestamp FROM messages
                    WHERE channel_id = %s ORDER BY timestamp ASC, id ASC;
                """, (channel_id,))
            else:
                cur.execute("SELECT id, reply_to, timestamp FROM messages ORDER BY timestamp ASC, id ASC;")
            rows = cur.fetchall()
            cur.close()
            return [MessageNode(id=r[0], reply_to=r[1], timestamp=to_utc(r[2])) for r in rows]
        except Exception as e:
            logger.error(f"Error listing message nodes: {e}")
            raise
        finally:
            self._db.put_connection(conn)


# ═══════════════════════════════════════════════════════════════════
#  HASHES
# ═══════════════════════════════════════════════════════════════════

class PgHashStore(HashStore):

    def __init__(self, db: Database, table: str = "conversation_hashes"):
        if table not in _HASH_TABLES:
            raise ValueError(f"Unknown hash table: {table}")
        self._db = db
        self._table = table

    def get(self, key: str) -> Optional[str]:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"SELECT hash FROM {self._table} WHERE key = %s;", (key,))
            row = cur.fetchone()
            cur.close()
            return row[0] if row else None
        except Exception as e:
            logger.error(f"Error reading {self._table}[{key}]: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def upsert(self, key: str, digest: str) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO {self._table} (key, hash) VALUES (%s, %s)
                ON CONFLICT (key) DO UPDATE SET hash = EXCLUDED.hash;
            """, (key, digest))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error writing {self._table}[{key}]: {e}")
            raise
        finally:
            self._db.put_connection(conn)


# ═══════════════════════════════════════════════════════════════════
#  VECTORS (pgvector)
# ═══════════════════════════════════════════════════════════════════

class PgVectorIndex(VectorIndex):
    """One ``vector(dim)`` row per key; L2 search via ``<->``."""

    def __init__(self, db: Database, table: str = "conversation_embeddings"):
        if table not in _VECTOR_TABLES:
            raise ValueError(f"Unknown vector table: {table}")
        self._db = db
        self._table = table

    def upsert(self, key: str, vector) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"""
                INSERT INTO {self._table} (key, embedding) VALUES (%s, %s::vector)
                ON CONFLICT (key) DO UPDATE SET embedding = EXCLUDED.embedding;
            """, (key, _to_list(vector)))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error writing {self._table}[{key}]: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def delete(self, key: str) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"DELETE FROM {self._table} WHERE key = %s;", (key,))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error deleting {self._table}[{key}]: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def replace(self, key: str, vector) -> None:
        """Delete + insert in one transaction."""
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute(f"DELETE FROM {self._table} WHERE key = %s;", (key,))
            cur.execute(
                f"INSERT INTO {self._table} (key, embedding) VALUES (%s, %s::vector);",
                (key, _to_list(vector)),
            )
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error replacing {self._table}[{key}]: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def knn(self, query, k: int) -> list[tuple[str, float]]:
        if k <= 0:
            return []
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            emb = _to_list(query)
            cur.execute(f"""
                SELECT key, embedding <-> %s::vector AS distance
                FROM {self._table}
                ORDER BY embedding <-> %s::vector, key
                LIMIT %s;
            """, (emb, emb, k))
            rows = cur.fetchall()
            cur.close()
            return [(r[0], float(r[1])) for r in rows]
        except Exception as e:
            logger.error(f"Error searching {self._table}: {e}")
            raise
        finally:
            self._db.put_connection(conn)


# ═══════════════════════════════════════════════════════════════════
#  DOCS
# ═══════════════════════════════════════════════════════════════════

class PgDocStore(DocStore):

    def __init__(self, db: Database):
        self._db = db

    def upsert_doc(self, doc: Doc) -> None:
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute("""
                INSERT INTO docs (id, file_name, body) VALUES (%s, %s, %s)
                ON CONFLICT (id) DO UPDATE
                SET file_name = EXCLUDED.file_name, body = EXCLUDED.body;
            """, (doc.id, doc.file_name, doc.body))
            conn.commit(); cur.close()
        except Exception as e:
            logger.error(f"Error storing doc {doc.id}: {e}")
            raise
        finally:
            self._db.put_connection(conn)

    def get_docs(self, doc_ids: Sequence[str]) -> list[Doc]:
        ids = list(doc_ids)
        if not ids:
            return []
        conn = None
        try:
            conn = self._db.get_connection()
            cur = conn.cursor()
            cur.execute("SELECT id, file_name, body FROM docs WHERE id = ANY(%s);", (ids,))
            rows = {r[0]: Doc(id=r[0], file_name=r[1], body=r[2]) for r in cur.fetchall()}
            cur.close()
            return [rows[d] for d in ids if d in rows]
        except Exception as e:
            logger.error(f"Error loading docs: {e}")
            raise
        finally:
            self._db.put_connection(conn)

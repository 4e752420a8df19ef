"""Tests for the pgvector stores — SQL shape and error propagation.

No database: Database is a MagicMock whose connection hands out a mock cursor.
"""

from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import MagicMock

import numpy as np
import pytest

from conftest import make_message
from query_db import PgHashStore, PgMessageStore, PgVectorIndex, db_config


def _db(rows=None, one=None):
    cur = MagicMock()
    cur.fetchall.return_value = rows or []
    cur.fetchone.return_value = one
    conn = MagicMock()
    conn.cursor.return_value = cur
    db = MagicMock()
    db.get_connection.return_value = conn
    return db, conn, cur


class TestDbConfig:
    def _settings(self, **kw):
        base = dict(
            DATABASE_URL="", POSTGRES_HOST="h", POSTGRES_PORT=1, POSTGRES_DB="d",
            POSTGRES_USER="u", POSTGRES_PASSWORD="p",
        )
        base.update(kw)
        return SimpleNamespace(**base)

    def test_database_url_wins(self):
        cfg = db_config(self._settings(DATABASE_URL="postgresql://alice:pw@db:6543/threads"))
        assert cfg == {"host": "db", "port": 6543, "database": "threads", "user": "alice", "password": "pw"}

    def test_individual_fields(self):
        assert db_config(self._settings())["host"] == "h"


class TestPgVectorIndex:
    def test_knn_uses_l2_operator(self):
        db, _, cur = _db(rows=[("1", 0.5), ("2", 1.5)])
        hits = PgVectorIndex(db).knn(np.ones(3), 2)

        sql, params = cur.execute.call_args[0]
        assert "<->" in sql and "ORDER BY" in sql
        assert params[-1] == 2
        assert hits == [("1", 0.5), ("2", 1.5)]
        db.put_connection.assert_called_once()

    def test_replace_is_one_transaction(self):
        db, conn, cur = _db()
        PgVectorIndex(db, "doc_embeddings").replace("a.md", [0.1, 0.2])

        statements = [c.args[0] for c in cur.execute.call_args_list]
        assert statements[0].startswith("DELETE FROM doc_embeddings")
        assert statements[1].startswith("INSERT INTO doc_embeddings")
        conn.commit.assert_called_once()

    def test_error_logged_and_reraised(self):
        db, _, cur = _db()
        cur.execute.side_effect = RuntimeError("connection reset")
        with pytest.raises(RuntimeError):
            PgVectorIndex(db).upsert("1", [0.1])
        db.put_connection.assert_called_once()

    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError):
            PgVectorIndex(MagicMock(), "users; DROP TABLE users")


class TestPgHashStore:
    def test_get_missing(self):
        db, _, _ = _db(one=None)
        assert PgHashStore(db).get("1") is None

    def test_get_present(self):
        db, _, _ = _db(one=("abc",))
        assert PgHashStore(db, "doc_hashes").get("a.md") == "abc"

    def test_unknown_table_rejected(self):
        with pytest.raises(ValueError):
            PgHashStore(MagicMock(), "messages")


class TestPgMessageStore:
    def test_thread_query_is_recursive_union(self):
        ts = datetime(2024, 3, 1, tzinfo=timezone.utc)
        db, _, cur = _db(rows=[("1", "hi", ts, "u1", "U1", False, None, "general")])
        msgs = PgMessageStore(db).get_messages_in_thread("1")

        sql = cur.execute.call_args[0][0]
        assert "WITH RECURSIVE" in sql
        assert "UNION" in sql and "UNION ALL" not in sql
        assert msgs[0].author.display_name == "U1"
        assert msgs[0].channel_id == "general"

    def test_upsert_message_params(self):
        db, conn, cur = _db()
        PgMessageStore(db).upsert_message(make_message("2", "1"))
        params = cur.execute.call_args[0][1]
        assert params[0] == "2"
        assert params[4] == "1"
        conn.commit.assert_called_once()

    def test_get_messages_empty_ids_skips_query(self):
        db, _, _ = _db()
        assert PgMessageStore(db).get_messages([]) == []
        db.get_connection.assert_not_called()

    def test_nodes_filtered_by_channel(self):
        ts = datetime(2024, 3, 1, tzinfo=timezone.utc)
        db, _, cur = _db(rows=[("1", None, ts)])
        nodes = PgMessageStore(db).get_all_message_nodes("general")
        assert cur.execute.call_args[0][1] == ("general",)
        assert nodes[0].id == "1"

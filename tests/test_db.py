import os
import sqlite3

import pytest

from feedsync.db import DBConn, _normalize_sql, connect_db, is_postgres_url
from feedsync.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    raw = sqlite3.connect(str(tmp_path / "state.sqlite3"), isolation_level=None)
    conn = DBConn(raw, "sqlite")
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))
    conn.close()


def test_connect_db_creates_schema(tmp_path):
    path = tmp_path / "nested" / "state.sqlite3"
    conn = connect_db(str(path))
    tables = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    }
    assert {"feeds", "subscriptions", "jobs", "websub_subscriptions", "entries", "user_entries"} <= tables
    assert os.path.exists(path)
    conn.close()


def test_in_memory_connections_are_migrated():
    conn = connect_db(":memory:")
    assert conn.execute("SELECT COUNT(*) FROM jobs").fetchone()[0] == 0
    conn.close()


def test_connect_db_requires_path():
    with pytest.raises(ValueError):
        connect_db(None)


def test_transaction_rolls_back_on_error(conn):
    with pytest.raises(RuntimeError):
        with conn.transaction():
            conn.execute(
                "INSERT INTO feeds (id, url, websub_active, consecutive_failures, created_at, updated_at) "
                "VALUES (?, ?, 0, 0, ?, ?)",
                ("feed-1", "https://example.com/feed", "2026-01-01", "2026-01-01"),
            )
            with conn.transaction():
                assert conn.in_transaction
            raise RuntimeError("boom")
    assert conn.execute("SELECT COUNT(*) FROM feeds").fetchone()[0] == 0
    assert conn.in_transaction is False


def test_normalize_sql_for_postgres():
    assert _normalize_sql("SELECT ? WHERE a LIKE 'x?'", "sqlite") == "SELECT ? WHERE a LIKE 'x?'"
    assert _normalize_sql("SELECT ? WHERE a LIKE 'x?'", "postgres") == "SELECT %s WHERE a LIKE 'x?'"
    assert _normalize_sql("SELECT '100%'", "postgres") == "SELECT '100%%'"
    assert (
        _normalize_sql("INSERT OR IGNORE INTO t (a) VALUES (?)", "postgres")
        == "INSERT INTO t (a) VALUES (%s) ON CONFLICT DO NOTHING"
    )


def test_is_postgres_url():
    assert is_postgres_url("postgresql://user@host/db")
    assert is_postgres_url("postgres://host/db")
    assert not is_postgres_url("sqlite:///tmp/x")
    assert not is_postgres_url(None)

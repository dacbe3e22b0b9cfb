from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from typing import Any, Iterable, Iterator

from .migrations import apply_migrations
from .migrations_pg import apply_migrations_pg
from .utils import log_event

_MIGRATED_TARGETS: set[str] = set()
_MIGRATION_LOCK = threading.Lock()

logger = logging.getLogger("feedsync.db")


def get_db_url() -> str | None:
    url = os.environ.get("FS_DB_URL", "").strip()
    return url or None


def is_postgres_url(url: str | None) -> bool:
    if not url:
        return False
    return url.startswith("postgres://") or url.startswith("postgresql://")


class DBConn:
    def __init__(self, conn: Any, backend: str) -> None:
        self._conn = conn
        self.backend = backend
        self._depth = 0

    def execute(self, sql: str, params: tuple | list | None = None):
        sql = _normalize_sql(sql, self.backend)
        params = params or ()
        cursor = self._conn.cursor()
        cursor.execute(sql, params)
        return cursor

    def executemany(self, sql: str, seq_of_params):
        sql = _normalize_sql(sql, self.backend)
        cursor = self._conn.cursor()
        cursor.executemany(sql, seq_of_params)
        return cursor

    @property
    def integrity_errors(self) -> tuple[type[Exception], ...]:
        if self.backend == "postgres":
            import psycopg

            return (psycopg.IntegrityError,)
        return (sqlite3.IntegrityError,)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["DBConn"]:
        # Nested calls join the outermost transaction.
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return
        if self.backend == "postgres":
            with self._conn.transaction():
                self._depth = 1
                try:
                    yield self
                finally:
                    self._depth = 0
            return
        self._conn.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self._conn.execute("ROLLBACK")
            raise
        self._depth = 0
        self._conn.execute("COMMIT")

    def commit(self) -> None:
        if not self._depth:
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __getattr__(self, name: str):
        return getattr(self._conn, name)


def connect_db(path: str | None = None) -> DBConn:
    url = get_db_url()
    if url and is_postgres_url(url):
        return _connect_postgres(url)
    if not path:
        raise ValueError("A SQLite path is required when FS_DB_URL is not set")
    return _connect_sqlite(path)


def _connect_postgres(url: str) -> DBConn:
    try:
        import psycopg
    except ImportError as exc:  # pragma: no cover - depends on env
        raise RuntimeError("psycopg is required for PostgreSQL support") from exc
    raw = psycopg.connect(url, autocommit=True)
    conn = DBConn(raw, "postgres")
    _ensure_migrated(conn, f"postgres:{url}", apply_migrations_pg)
    return conn


def _connect_sqlite(path: str) -> DBConn:
    if path != ":memory:":
        directory = os.path.dirname(os.path.abspath(path))
        os.makedirs(directory, exist_ok=True)
    raw = sqlite3.connect(path, isolation_level=None, check_same_thread=False, timeout=5.0)
    raw.execute("PRAGMA journal_mode=WAL")
    raw.execute("PRAGMA synchronous=NORMAL")
    raw.execute("PRAGMA busy_timeout=5000")
    raw.execute("PRAGMA foreign_keys=ON")
    conn = DBConn(raw, "sqlite")
    target = "sqlite::memory:" if path == ":memory:" else f"sqlite:{os.path.abspath(path)}"
    # Every in-memory connection is a separate database.
    if path == ":memory:":
        apply_migrations(conn)
    else:
        _ensure_migrated(conn, target, apply_migrations)
    return conn


def _ensure_migrated(conn: DBConn, target: str, migrate) -> None:
    with _MIGRATION_LOCK:
        if target in _MIGRATED_TARGETS:
            return
        migrate(conn)
        _MIGRATED_TARGETS.add(target)
        log_event(logger, logging.DEBUG, "db_migrated", backend=conn.backend)


def _normalize_sql(sql: str, backend: str) -> str:
    if backend != "postgres":
        return sql
    normalized = _replace_insert_or_ignore(sql)
    normalized = normalized.replace("BEGIN IMMEDIATE", "BEGIN")
    normalized = _convert_qmark_to_percent(normalized)
    return normalized


def _replace_insert_or_ignore(sql: str) -> str:
    upper = sql.upper()
    if "INSERT OR IGNORE" not in upper:
        return sql
    idx = upper.find("INSERT OR IGNORE")
    replaced = sql[:idx] + "INSERT" + sql[idx + len("INSERT OR IGNORE") :]
    if "ON CONFLICT" in replaced.upper():
        return replaced
    return replaced.rstrip().rstrip(";") + " ON CONFLICT DO NOTHING"


def _convert_qmark_to_percent(sql: str) -> str:
    out = []
    in_single = False
    for ch in sql:
        if ch == "'":
            in_single = not in_single
        if ch == "?" and not in_single:
            out.append("%s")
        elif ch == "%":
            out.append("%%")
        else:
            out.append(ch)
    return "".join(out)


# Parents before children so foreign keys hold on the target.
COPY_TABLE_ORDER = (
    "feeds",
    "subscriptions",
    "jobs",
    "websub_subscriptions",
    "entries",
    "user_entries",
)


def _chunked(rows: Iterable[tuple], size: int = 500) -> Iterator[list[tuple]]:
    batch: list[tuple] = []
    for row in rows:
        batch.append(row)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


def copy_sqlite_to_postgres(sqlite_path: str, pg_url: str) -> dict[str, int]:
    """Copy every feedsync table from a SQLite file into a migrated PostgreSQL store.

    Rows already present on the target are left untouched.
    """
    if not is_postgres_url(pg_url):
        raise ValueError("A postgres:// or postgresql:// URL is required")
    source = sqlite3.connect(sqlite_path)
    target = _connect_postgres(pg_url)
    copied: dict[str, int] = {}
    try:
        for table in COPY_TABLE_ORDER:
            columns = [row[1] for row in source.execute(f"PRAGMA table_info({table})").fetchall()]
            if not columns:
                continue
            cols_sql = ", ".join(columns)
            placeholders = ", ".join(["?"] * len(columns))
            insert_sql = (
                f"INSERT INTO {table} ({cols_sql}) VALUES ({placeholders}) "
                "ON CONFLICT DO NOTHING"
            )
            count = 0
            cursor = source.execute(f"SELECT {cols_sql} FROM {table}")
            for batch in _chunked(cursor, 500):
                with target.transaction():
                    target.executemany(insert_sql, batch)
                count += len(batch)
            copied[table] = count
            log_event(logger, logging.INFO, "table_copied", table=table, rows=count)
    finally:
        source.close()
        target.close()
    return copied

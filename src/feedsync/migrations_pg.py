from __future__ import annotations

from typing import Any

from .migrations import run_migrations

# Arbitrary constant shared by every worker process.
_MIGRATION_LOCK_KEY = 7_210_455_019


def _advisory_lock(conn: Any) -> None:
    # Workers starting together must not race on DDL.
    conn.execute("SELECT pg_advisory_xact_lock(?)", (_MIGRATION_LOCK_KEY,))


def apply_migrations_pg(conn: Any) -> None:
    run_migrations(conn, prefix="pg_", before=_advisory_lock)

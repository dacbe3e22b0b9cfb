from __future__ import annotations

import logging
from typing import Any, Callable, Optional

from .utils import utc_now_iso

Migration = Callable[[Any], None]

logger = logging.getLogger("feedsync.migrations")

_LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version TEXT PRIMARY KEY,
    applied_at TEXT NOT NULL
)
"""


def apply_migrations(conn: Any) -> None:
    run_migrations(conn)


def run_migrations(
    conn: Any, prefix: str = "", before: Optional[Callable[[Any], None]] = None
) -> list[str]:
    """Apply pending schema steps in one transaction and return the versions applied.

    ``prefix`` namespaces ledger rows so a database shared by two backends
    keeps separate histories.
    """
    applied_now: list[str] = []
    with conn.transaction():
        if before is not None:
            before(conn)
        conn.execute(_LEDGER_DDL)
        done = {row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()}
        pending = [(prefix + v, step) for v, step in _get_migrations() if prefix + v not in done]
        for version, step in pending:
            step(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            applied_now.append(version)
            logger.info("migration_applied version=%s", version)
    if not applied_now:
        logger.debug("migrations_current prefix=%s", prefix or "-")
    return applied_now


def _migration_feeds_and_subscriptions(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS feeds (
            id TEXT PRIMARY KEY,
            url TEXT NOT NULL UNIQUE,
            self_url TEXT NULL,
            hub_url TEXT NULL,
            websub_active INTEGER NOT NULL DEFAULT 0,
            title TEXT NULL,
            etag TEXT NULL,
            last_modified TEXT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            last_error TEXT NULL,
            last_fetched_at TEXT NULL,
            next_fetch_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            feed_id TEXT NOT NULL REFERENCES feeds(id),
            previous_feed_ids_json TEXT NOT NULL DEFAULT '[]',
            subscribed_at TEXT NOT NULL,
            unsubscribed_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_subscriptions_active_user_feed
        ON subscriptions(user_id, feed_id)
        WHERE unsubscribed_at IS NULL
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_feed ON subscriptions(feed_id)"
    )


def _migration_jobs(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            feed_id TEXT NULL,
            payload_json TEXT NOT NULL DEFAULT '{}',
            enabled INTEGER NOT NULL DEFAULT 1,
            next_run_at TEXT NOT NULL,
            running_since TEXT NULL,
            last_run_at TEXT NULL,
            last_error TEXT NULL,
            consecutive_failures INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_type_feed ON jobs(job_type, feed_id)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(enabled, next_run_at)"
    )


def _migration_websub_subscriptions(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS websub_subscriptions (
            id TEXT PRIMARY KEY,
            feed_id TEXT NOT NULL REFERENCES feeds(id),
            hub_url TEXT NOT NULL,
            topic_url TEXT NOT NULL,
            callback_secret TEXT NOT NULL,
            secret_key_id TEXT NULL,
            state TEXT NOT NULL DEFAULT 'pending',
            lease_seconds INTEGER NULL,
            expires_at TEXT NULL,
            last_challenge_at TEXT NULL,
            last_error TEXT NULL,
            unsubscribe_requested_at TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(feed_id, hub_url)
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_websub_state_expires
        ON websub_subscriptions(state, expires_at)
        """
    )


def _migration_entries(conn: Any) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS entries (
            id TEXT PRIMARY KEY,
            feed_id TEXT NOT NULL REFERENCES feeds(id),
            guid TEXT NOT NULL,
            url TEXT NULL,
            title TEXT NULL,
            published_at TEXT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(feed_id, guid)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_entries (
            user_id TEXT NOT NULL,
            entry_id TEXT NOT NULL REFERENCES entries(id),
            read INTEGER NOT NULL DEFAULT 0,
            starred INTEGER NOT NULL DEFAULT 0,
            updated_at TEXT NOT NULL,
            PRIMARY KEY(user_id, entry_id)
        )
        """
    )


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_feeds_subscriptions", _migration_feeds_and_subscriptions),
        ("002_jobs", _migration_jobs),
        ("003_websub_subscriptions", _migration_websub_subscriptions),
        ("004_entries", _migration_entries),
    ]

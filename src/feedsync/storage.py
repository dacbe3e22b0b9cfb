from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any

import jsonschema

from .errors import DuplicateJobError, InvalidJobPayload, JobNotFoundError
from .models import JOB_FETCH_FEED, JOB_RENEW_WEBSUB, Feed, Job, Subscription
from .utils import json_dumps, log_event, to_iso, utc_now, utc_now_iso

logger = logging.getLogger("feedsync.storage")

STALE_JOB_SECONDS = 5 * 60
SINGLETON_JOB_TYPES = (JOB_RENEW_WEBSUB,)

JOB_PAYLOAD_SCHEMAS: dict[str, dict[str, Any]] = {
    JOB_FETCH_FEED: {
        "type": "object",
        "properties": {"feed_id": {"type": "string", "minLength": 1}},
        "required": ["feed_id"],
        "additionalProperties": False,
    },
    JOB_RENEW_WEBSUB: {
        "type": "object",
        "additionalProperties": False,
    },
}

_JOB_COLUMNS = (
    "id, job_type, payload_json, enabled, next_run_at, running_since, last_run_at, "
    "last_error, consecutive_failures, created_at, updated_at"
)
_FEED_COLUMNS = (
    "id, url, self_url, hub_url, websub_active, title, etag, last_modified, "
    "consecutive_failures, last_error, last_fetched_at, next_fetch_at"
)
_SUBSCRIPTION_COLUMNS = (
    "id, user_id, feed_id, previous_feed_ids_json, subscribed_at, unsubscribed_at"
)


def validate_job_payload(job_type: str, payload: dict[str, object] | None) -> dict[str, object]:
    schema = JOB_PAYLOAD_SCHEMAS.get(job_type)
    if schema is None:
        raise InvalidJobPayload(f"Unknown job type: {job_type}")
    payload = payload or {}
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise InvalidJobPayload(f"{job_type}: {exc.message}") from exc
    return payload


# Jobs


def create_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    *,
    next_run_at: datetime | str | None = None,
    enabled: bool = True,
) -> Job:
    payload = validate_job_payload(job_type, payload)
    job_id = _new_job_id()
    now = utc_now_iso()
    try:
        conn.execute(
            f"""
            INSERT INTO jobs ({_JOB_COLUMNS}, feed_id)
            VALUES (?, ?, ?, ?, ?, NULL, NULL, NULL, 0, ?, ?, ?)
            """,
            (
                job_id,
                job_type,
                json_dumps(payload),
                1 if enabled else 0,
                _iso(next_run_at) or now,
                now,
                now,
                payload.get("feed_id"),
            ),
        )
    except conn.integrity_errors as exc:
        # idx_jobs_type_feed allows one job per (job_type, feed_id).
        raise DuplicateJobError(job_type, payload.get("feed_id")) from exc
    conn.commit()
    log_event(logger, logging.DEBUG, "job_created", job_id=job_id, job_type=job_type)
    return _require_job(conn, job_id)


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    *,
    enabled: bool | None = None,
    job_type: str | None = None,
    limit: int = 100,
) -> list[Job]:
    clauses: list[str] = []
    params: list[object] = []
    if enabled is not None:
        clauses.append("enabled = ?")
        params.append(1 if enabled else 0)
    if job_type:
        clauses.append("job_type = ?")
        params.append(job_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS}
        FROM jobs
        {where}
        ORDER BY next_run_at ASC, created_at ASC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def claim_job(
    conn: Any,
    *,
    types: list[str] | tuple[str, ...] | None = None,
    now: datetime | None = None,
    stale_after_seconds: int = STALE_JOB_SECONDS,
) -> Job | None:
    """Claim the oldest due job, or return None.

    A job is eligible when enabled, due, and either not running or running
    for longer than ``stale_after_seconds``. Concurrent callers never receive
    the same row.
    """
    now = now or utc_now()
    now_iso = to_iso(now)
    cutoff = to_iso(now - timedelta(seconds=stale_after_seconds))
    params: list[object] = [now_iso, cutoff]
    type_clause = ""
    if types:
        type_clause = f" AND job_type IN ({','.join(['?'] * len(types))})"
        params.extend(types)
    eligible = (
        "enabled = 1 AND next_run_at <= ? "
        "AND (running_since IS NULL OR running_since < ?)" + type_clause
    )

    if conn.backend == "postgres":
        row = conn.execute(
            f"""
            UPDATE jobs
            SET running_since = ?, updated_at = ?
            WHERE id = (
                SELECT id FROM jobs
                WHERE {eligible}
                ORDER BY next_run_at ASC, created_at ASC
                LIMIT 1
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_JOB_COLUMNS}
            """,
            (now_iso, now_iso, *params),
        ).fetchone()
        job = _row_to_job(row) if row else None
    else:
        job = None
        with conn.transaction():
            row = conn.execute(
                f"""
                SELECT id FROM jobs
                WHERE {eligible}
                ORDER BY next_run_at ASC, created_at ASC
                LIMIT 1
                """,
                tuple(params),
            ).fetchone()
            if row:
                cursor = conn.execute(
                    """
                    UPDATE jobs
                    SET running_since = ?, updated_at = ?
                    WHERE id = ? AND (running_since IS NULL OR running_since < ?)
                    """,
                    (now_iso, now_iso, row[0], cutoff),
                )
                if cursor.rowcount == 1:
                    job = get_job(conn, row[0])
    if job:
        log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
    return job


def claim_singleton_job(
    conn: Any,
    job_type: str,
    *,
    now: datetime | None = None,
    stale_after_seconds: int = STALE_JOB_SECONDS,
) -> Job | None:
    if job_type not in SINGLETON_JOB_TYPES:
        raise ValueError(f"{job_type} is not a singleton job type")
    now = now or utc_now()
    now_iso = to_iso(now)
    conn.execute(
        f"""
        INSERT OR IGNORE INTO jobs ({_JOB_COLUMNS}, feed_id)
        VALUES (?, ?, ?, 1, ?, NULL, NULL, NULL, 0, ?, ?, NULL)
        """,
        (_singleton_job_id(job_type), job_type, json_dumps({}), now_iso, now_iso, now_iso),
    )
    conn.commit()
    return claim_job(conn, types=[job_type], now=now, stale_after_seconds=stale_after_seconds)


def finish_job(
    conn: Any,
    job_id: str,
    *,
    success: bool,
    next_run_at: datetime | str,
    error: str | None = None,
    now: datetime | None = None,
) -> Job:
    now_iso = to_iso(now or utc_now())
    if success:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET running_since = NULL,
                last_run_at = ?,
                next_run_at = ?,
                last_error = NULL,
                consecutive_failures = 0,
                updated_at = ?
            WHERE id = ?
            """,
            (now_iso, _iso(next_run_at), now_iso, job_id),
        )
    else:
        cursor = conn.execute(
            """
            UPDATE jobs
            SET running_since = NULL,
                last_run_at = ?,
                next_run_at = ?,
                last_error = ?,
                consecutive_failures = consecutive_failures + 1,
                updated_at = ?
            WHERE id = ?
            """,
            (now_iso, _iso(next_run_at), error or "Unknown error", now_iso, job_id),
        )
    conn.commit()
    if cursor.rowcount == 0:
        raise JobNotFoundError(job_id)
    log_event(
        logger,
        logging.INFO,
        "job_finished",
        job_id=job_id,
        success=success,
        next_run_at=_iso(next_run_at),
    )
    return _require_job(conn, job_id)


def get_feed_job(conn: Any, feed_id: str) -> Job | None:
    row = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_type = ? AND feed_id = ?",
        (JOB_FETCH_FEED, feed_id),
    ).fetchone()
    return _row_to_job(row) if row else None


def create_or_enable_feed_job(
    conn: Any, feed_id: str, next_run_at: datetime | str | None = None
) -> Job:
    run_at = _iso(next_run_at) or utc_now_iso()
    now = utc_now_iso()
    with conn.transaction():
        conn.execute(
            f"""
            INSERT INTO jobs ({_JOB_COLUMNS}, feed_id)
            VALUES (?, ?, ?, 1, ?, NULL, NULL, NULL, 0, ?, ?, ?)
            ON CONFLICT (job_type, feed_id) DO NOTHING
            """,
            (
                _new_job_id(),
                JOB_FETCH_FEED,
                json_dumps({"feed_id": feed_id}),
                run_at,
                now,
                now,
                feed_id,
            ),
        )
        # A disabled job is re-armed for the requested time.
        conn.execute(
            """
            UPDATE jobs
            SET enabled = 1, next_run_at = ?, updated_at = ?
            WHERE job_type = ? AND feed_id = ? AND enabled = 0
            """,
            (run_at, now, JOB_FETCH_FEED, feed_id),
        )
        job = get_feed_job(conn, feed_id)
    if job is None:
        raise JobNotFoundError(f"fetch_feed:{feed_id}")
    return job


def enable_feed_job(conn: Any, feed_id: str) -> Job | None:
    return _set_feed_job_enabled(conn, feed_id, True)


def sync_feed_job_enabled(conn: Any, feed_id: str) -> Job | None:
    enabled = count_active_subscriptions(conn, feed_id) > 0
    job = _set_feed_job_enabled(conn, feed_id, enabled)
    if job is not None:
        log_event(logger, logging.DEBUG, "feed_job_synced", feed_id=feed_id, enabled=enabled)
    return job


def update_feed_job_next_run(
    conn: Any, feed_id: str, next_run_at: datetime | str
) -> Job | None:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET next_run_at = ?, updated_at = ?
        WHERE job_type = ? AND feed_id = ?
        """,
        (_iso(next_run_at), utc_now_iso(), JOB_FETCH_FEED, feed_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_feed_job(conn, feed_id)


def _set_feed_job_enabled(conn: Any, feed_id: str, enabled: bool) -> Job | None:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET enabled = ?, updated_at = ?
        WHERE job_type = ? AND feed_id = ?
        """,
        (1 if enabled else 0, utc_now_iso(), JOB_FETCH_FEED, feed_id),
    )
    conn.commit()
    if cursor.rowcount == 0:
        return None
    return get_feed_job(conn, feed_id)


# Feeds


def create_feed(
    conn: Any,
    url: str,
    *,
    title: str | None = None,
    hub_url: str | None = None,
    self_url: str | None = None,
) -> Feed:
    feed_id = str(uuid.uuid4())
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO feeds
            (id, url, self_url, hub_url, websub_active, title, consecutive_failures,
             created_at, updated_at)
        VALUES (?, ?, ?, ?, 0, ?, 0, ?, ?)
        """,
        (feed_id, url, self_url, hub_url, title, now, now),
    )
    conn.commit()
    log_event(logger, logging.INFO, "feed_created", feed_id=feed_id, url=url)
    feed = get_feed(conn, feed_id)
    assert feed is not None
    return feed


def get_or_create_feed(conn: Any, url: str) -> Feed:
    existing = get_feed_by_url(conn, url)
    if existing:
        return existing
    return create_feed(conn, url)


def get_feed(conn: Any, feed_id: str) -> Feed | None:
    row = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE id = ?", (feed_id,)).fetchone()
    return _row_to_feed(row) if row else None


def get_feed_by_url(conn: Any, url: str) -> Feed | None:
    row = conn.execute(f"SELECT {_FEED_COLUMNS} FROM feeds WHERE url = ?", (url,)).fetchone()
    return _row_to_feed(row) if row else None


def update_feed_url(conn: Any, feed_id: str, url: str) -> bool:
    cursor = conn.execute(
        "UPDATE feeds SET url = ?, updated_at = ? WHERE id = ?",
        (url, utc_now_iso(), feed_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_feed_fetch_success(
    conn: Any,
    feed_id: str,
    *,
    next_fetch_at: datetime | str,
    etag: str | None = None,
    last_modified: str | None = None,
    title: str | None = None,
    now: datetime | None = None,
) -> None:
    now_iso = to_iso(now or utc_now())
    conn.execute(
        """
        UPDATE feeds
        SET consecutive_failures = 0,
            last_error = NULL,
            last_fetched_at = ?,
            next_fetch_at = ?,
            etag = COALESCE(?, etag),
            last_modified = COALESCE(?, last_modified),
            title = COALESCE(?, title),
            updated_at = ?
        WHERE id = ?
        """,
        (now_iso, _iso(next_fetch_at), etag, last_modified, title, now_iso, feed_id),
    )
    conn.commit()


def record_feed_fetch_failure(
    conn: Any, feed_id: str, error: str, *, now: datetime | None = None
) -> int:
    now_iso = to_iso(now or utc_now())
    conn.execute(
        """
        UPDATE feeds
        SET consecutive_failures = consecutive_failures + 1,
            last_error = ?,
            last_fetched_at = ?,
            updated_at = ?
        WHERE id = ?
        """,
        (error, now_iso, now_iso, feed_id),
    )
    conn.commit()
    row = conn.execute(
        "SELECT consecutive_failures FROM feeds WHERE id = ?", (feed_id,)
    ).fetchone()
    return int(row[0]) if row else 0


def set_feed_next_fetch(conn: Any, feed_id: str, next_fetch_at: datetime | str) -> None:
    conn.execute(
        "UPDATE feeds SET next_fetch_at = ?, updated_at = ? WHERE id = ?",
        (_iso(next_fetch_at), utc_now_iso(), feed_id),
    )
    conn.commit()


def update_feed_push_metadata(
    conn: Any, feed_id: str, *, hub_url: str | None, self_url: str | None
) -> None:
    conn.execute(
        "UPDATE feeds SET hub_url = ?, self_url = ?, updated_at = ? WHERE id = ?",
        (hub_url, self_url, utc_now_iso(), feed_id),
    )
    conn.commit()


def set_feed_websub_active(conn: Any, feed_id: str, active: bool) -> None:
    conn.execute(
        "UPDATE feeds SET websub_active = ?, updated_at = ? WHERE id = ?",
        (1 if active else 0, utc_now_iso(), feed_id),
    )
    conn.commit()


# Subscriptions


def get_subscription(conn: Any, subscription_id: str) -> Subscription | None:
    row = conn.execute(
        f"SELECT {_SUBSCRIPTION_COLUMNS} FROM subscriptions WHERE id = ?",
        (subscription_id,),
    ).fetchone()
    return _row_to_subscription(row) if row else None


def find_user_subscription(conn: Any, user_id: str, feed_id: str) -> Subscription | None:
    """Return the user's active subscription to a feed, else the latest ended one."""
    row = conn.execute(
        f"""
        SELECT {_SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE user_id = ? AND feed_id = ?
        ORDER BY CASE WHEN unsubscribed_at IS NULL THEN 0 ELSE 1 END, subscribed_at DESC
        LIMIT 1
        """,
        (user_id, feed_id),
    ).fetchone()
    return _row_to_subscription(row) if row else None


def create_subscription(
    conn: Any,
    user_id: str,
    feed_id: str,
    *,
    previous_feed_ids: list[str] | None = None,
    now: datetime | None = None,
) -> Subscription:
    subscription_id = str(uuid.uuid4())
    now_iso = to_iso(now or utc_now())
    conn.execute(
        f"""
        INSERT INTO subscriptions ({_SUBSCRIPTION_COLUMNS}, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, NULL, ?, ?)
        """,
        (
            subscription_id,
            user_id,
            feed_id,
            json.dumps(list(previous_feed_ids or [])),
            now_iso,
            now_iso,
            now_iso,
        ),
    )
    conn.commit()
    subscription = get_subscription(conn, subscription_id)
    assert subscription is not None
    return subscription


def reactivate_subscription(
    conn: Any,
    subscription_id: str,
    *,
    previous_feed_ids: list[str] | None = None,
    now: datetime | None = None,
) -> None:
    now_iso = to_iso(now or utc_now())
    if previous_feed_ids is None:
        conn.execute(
            """
            UPDATE subscriptions
            SET unsubscribed_at = NULL, subscribed_at = ?, updated_at = ?
            WHERE id = ?
            """,
            (now_iso, now_iso, subscription_id),
        )
    else:
        conn.execute(
            """
            UPDATE subscriptions
            SET unsubscribed_at = NULL, subscribed_at = ?, previous_feed_ids_json = ?,
                updated_at = ?
            WHERE id = ?
            """,
            (now_iso, json.dumps(previous_feed_ids), now_iso, subscription_id),
        )
    conn.commit()


def set_previous_feed_ids(conn: Any, subscription_id: str, previous_feed_ids: list[str]) -> None:
    conn.execute(
        "UPDATE subscriptions SET previous_feed_ids_json = ?, updated_at = ? WHERE id = ?",
        (json.dumps(previous_feed_ids), utc_now_iso(), subscription_id),
    )
    conn.commit()


def end_subscription(conn: Any, subscription_id: str, *, now: datetime | None = None) -> bool:
    now_iso = to_iso(now or utc_now())
    cursor = conn.execute(
        """
        UPDATE subscriptions
        SET unsubscribed_at = ?, updated_at = ?
        WHERE id = ? AND unsubscribed_at IS NULL
        """,
        (now_iso, now_iso, subscription_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def subscribe_user(
    conn: Any, user_id: str, feed_id: str, *, now: datetime | None = None
) -> Subscription:
    with conn.transaction():
        existing = find_user_subscription(conn, user_id, feed_id)
        if existing and existing.active:
            subscription = existing
        elif existing:
            reactivate_subscription(conn, existing.id, now=now)
            subscription = get_subscription(conn, existing.id)
        else:
            subscription = create_subscription(conn, user_id, feed_id, now=now)
        create_or_enable_feed_job(conn, feed_id)
    assert subscription is not None
    log_event(logger, logging.INFO, "user_subscribed", user_id=user_id, feed_id=feed_id)
    return subscription


def unsubscribe_user(
    conn: Any, user_id: str, feed_id: str, *, now: datetime | None = None
) -> bool:
    with conn.transaction():
        existing = find_user_subscription(conn, user_id, feed_id)
        ended = bool(existing and existing.active and end_subscription(conn, existing.id, now=now))
        sync_feed_job_enabled(conn, feed_id)
    if ended:
        log_event(logger, logging.INFO, "user_unsubscribed", user_id=user_id, feed_id=feed_id)
    return ended


def list_active_subscriptions(conn: Any, feed_id: str) -> list[Subscription]:
    cursor = conn.execute(
        f"""
        SELECT {_SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE feed_id = ? AND unsubscribed_at IS NULL
        ORDER BY subscribed_at ASC
        """,
        (feed_id,),
    )
    return [_row_to_subscription(row) for row in cursor.fetchall()]


def list_subscriptions_for_user(
    conn: Any, user_id: str, *, include_inactive: bool = False
) -> list[Subscription]:
    active_clause = "" if include_inactive else " AND unsubscribed_at IS NULL"
    cursor = conn.execute(
        f"""
        SELECT {_SUBSCRIPTION_COLUMNS}
        FROM subscriptions
        WHERE user_id = ?{active_clause}
        ORDER BY subscribed_at ASC
        """,
        (user_id,),
    )
    return [_row_to_subscription(row) for row in cursor.fetchall()]


def count_active_subscriptions(conn: Any, feed_id: str) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM subscriptions WHERE feed_id = ? AND unsubscribed_at IS NULL",
        (feed_id,),
    ).fetchone()
    return int(row[0]) if row else 0


def visible_feed_ids(conn: Any, user_id: str) -> list[str]:
    seen: list[str] = []
    for subscription in list_subscriptions_for_user(conn, user_id):
        for feed_id in subscription.feed_ids:
            if feed_id not in seen:
                seen.append(feed_id)
    return seen


# Entries


def insert_entry(
    conn: Any,
    feed_id: str,
    guid: str,
    *,
    url: str | None = None,
    title: str | None = None,
    published_at: str | None = None,
) -> str:
    entry_id = str(uuid.uuid4())
    conn.execute(
        """
        INSERT OR IGNORE INTO entries (id, feed_id, guid, url, title, published_at, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (entry_id, feed_id, guid, url, title, published_at, utc_now_iso()),
    )
    conn.commit()
    row = conn.execute(
        "SELECT id FROM entries WHERE feed_id = ? AND guid = ?", (feed_id, guid)
    ).fetchone()
    return str(row[0])


def set_user_entry_state(
    conn: Any,
    user_id: str,
    entry_id: str,
    *,
    read: bool | None = None,
    starred: bool | None = None,
) -> None:
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO user_entries (user_id, entry_id, read, starred, updated_at)
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT (user_id, entry_id) DO UPDATE
        SET read = COALESCE(?, user_entries.read),
            starred = COALESCE(?, user_entries.starred),
            updated_at = excluded.updated_at
        """,
        (
            user_id,
            entry_id,
            int(bool(read)),
            int(bool(starred)),
            now,
            None if read is None else int(read),
            None if starred is None else int(starred),
        ),
    )
    conn.commit()


def list_visible_entries(conn: Any, user_id: str) -> list[dict[str, object]]:
    feed_ids = visible_feed_ids(conn, user_id)
    if not feed_ids:
        return []
    placeholders = ",".join(["?"] * len(feed_ids))
    cursor = conn.execute(
        f"""
        SELECT e.id, e.feed_id, e.guid, e.title, e.url,
               COALESCE(ue.read, 0), COALESCE(ue.starred, 0)
        FROM entries e
        LEFT JOIN user_entries ue ON ue.entry_id = e.id AND ue.user_id = ?
        WHERE e.feed_id IN ({placeholders})
        ORDER BY e.created_at ASC
        """,
        (user_id, *feed_ids),
    )
    return [
        {
            "id": row[0],
            "feed_id": row[1],
            "guid": row[2],
            "title": row[3],
            "url": row[4],
            "read": bool(row[5]),
            "starred": bool(row[6]),
        }
        for row in cursor.fetchall()
    ]


# Rows


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        payload_json,
        enabled,
        next_run_at,
        running_since,
        last_run_at,
        last_error,
        consecutive_failures,
        created_at,
        updated_at,
    ) = row
    try:
        payload = json.loads(payload_json) if payload_json else {}
    except json.JSONDecodeError:
        payload = {}
    return Job(
        id=job_id,
        job_type=job_type,
        payload=payload,
        enabled=bool(enabled),
        next_run_at=next_run_at,
        running_since=running_since,
        last_run_at=last_run_at,
        last_error=last_error,
        consecutive_failures=int(consecutive_failures),
        created_at=created_at,
        updated_at=updated_at,
    )


def _row_to_feed(row: tuple) -> Feed:
    (
        feed_id,
        url,
        self_url,
        hub_url,
        websub_active,
        title,
        etag,
        last_modified,
        consecutive_failures,
        last_error,
        last_fetched_at,
        next_fetch_at,
    ) = row
    return Feed(
        id=feed_id,
        url=url,
        self_url=self_url,
        hub_url=hub_url,
        websub_active=bool(websub_active),
        title=title,
        etag=etag,
        last_modified=last_modified,
        consecutive_failures=int(consecutive_failures),
        last_error=last_error,
        last_fetched_at=last_fetched_at,
        next_fetch_at=next_fetch_at,
    )


def _row_to_subscription(row: tuple) -> Subscription:
    subscription_id, user_id, feed_id, previous_json, subscribed_at, unsubscribed_at = row
    try:
        previous = json.loads(previous_json) if previous_json else []
    except json.JSONDecodeError:
        previous = []
    return Subscription(
        id=subscription_id,
        user_id=user_id,
        feed_id=feed_id,
        previous_feed_ids=[str(item) for item in previous],
        subscribed_at=subscribed_at,
        unsubscribed_at=unsubscribed_at,
    )


def _require_job(conn: Any, job_id: str) -> Job:
    job = get_job(conn, job_id)
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def _iso(value: datetime | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return to_iso(value)
    return value


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _singleton_job_id(job_type: str) -> str:
    return f"job_singleton_{job_type}"

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from .models import Feed
from .storage import (
    create_or_enable_feed_job,
    create_subscription,
    end_subscription,
    find_user_subscription,
    get_feed_by_url,
    list_active_subscriptions,
    reactivate_subscription,
    set_previous_feed_ids,
    sync_feed_job_enabled,
    update_feed_url,
)
from .utils import log_event, utc_now

logger = logging.getLogger("feedsync.redirects")


@dataclass(frozen=True)
class MigrationResult:
    migrated: int
    created: int
    reactivated: int


@dataclass(frozen=True)
class RedirectOutcome:
    feed_id: str
    merged_into: str | None
    migration: MigrationResult | None = None


def handle_permanent_redirect(conn: Any, feed: Feed, new_url: str) -> RedirectOutcome:
    if new_url == feed.url:
        return RedirectOutcome(feed_id=feed.id, merged_into=None)
    target = get_feed_by_url(conn, new_url)
    if target is None:
        update_feed_url(conn, feed.id, new_url)
        log_event(
            logger,
            logging.INFO,
            "feed_url_updated",
            feed_id=feed.id,
            old_url=feed.url,
            new_url=new_url,
        )
        return RedirectOutcome(feed_id=feed.id, merged_into=None)
    migration = migrate_subscriptions_to_existing_feed(conn, feed.id, target.id)
    return RedirectOutcome(feed_id=feed.id, merged_into=target.id, migration=migration)


def migrate_subscriptions_to_existing_feed(
    conn: Any,
    old_feed_id: str,
    new_feed_id: str,
    *,
    now: datetime | None = None,
) -> MigrationResult:
    """Move every active subscriber of ``old_feed_id`` onto ``new_feed_id``.

    Old subscriptions are ended, never deleted, and the old feed id is appended
    to the user's subscription on the new feed so entries already read or
    starred on the old feed stay visible. Only the immediate hop is recorded.
    """
    if old_feed_id == new_feed_id:
        return MigrationResult(migrated=0, created=0, reactivated=0)
    now = now or utc_now()
    created = 0
    reactivated = 0
    with conn.transaction():
        old_subscriptions = list_active_subscriptions(conn, old_feed_id)
        for old in old_subscriptions:
            target = find_user_subscription(conn, old.user_id, new_feed_id)
            if target is not None:
                previous = list(target.previous_feed_ids)
                if old_feed_id not in previous:
                    previous.append(old_feed_id)
                # End the old row first so the reactivated row never collides with it.
                end_subscription(conn, old.id, now=now)
                if target.active:
                    set_previous_feed_ids(conn, target.id, previous)
                else:
                    reactivate_subscription(conn, target.id, previous_feed_ids=previous, now=now)
                    reactivated += 1
            else:
                end_subscription(conn, old.id, now=now)
                create_subscription(
                    conn, old.user_id, new_feed_id, previous_feed_ids=[old_feed_id], now=now
                )
                created += 1
        if old_subscriptions:
            create_or_enable_feed_job(conn, new_feed_id)
        sync_feed_job_enabled(conn, old_feed_id)
    log_event(
        logger,
        logging.INFO,
        "feed_subscriptions_migrated",
        old_feed_id=old_feed_id,
        new_feed_id=new_feed_id,
        migrated=len(old_subscriptions),
        created=created,
        reactivated=reactivated,
    )
    return MigrationResult(migrated=len(old_subscriptions), created=created, reactivated=reactivated)

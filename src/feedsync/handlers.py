from __future__ import annotations

import logging
import random
from datetime import datetime, timedelta
from typing import Any, Callable

from .config import Config
from .fetcher import (
    FETCH_CLIENT_ERROR,
    FETCH_NOT_MODIFIED,
    FETCH_OK,
    FETCH_REDIRECT,
    fetch_feed,
)
from .models import (
    PUSH_PENDING,
    PUSH_UNSUBSCRIBED,
    Feed,
    FetchResult,
    HandlerResult,
    Job,
    PushSubscription,
)
from .redirects import handle_permanent_redirect
from .scheduling import calculate_next_fetch
from .storage import (
    get_feed,
    record_feed_fetch_failure,
    record_feed_fetch_success,
    set_feed_next_fetch,
    update_feed_push_metadata,
)
from .utils import log_event, parse_iso, utc_now
from .websub import (
    can_use_websub,
    deactivate_websub,
    get_push_subscription,
    renew_expiring_subscriptions,
    subscribe_to_hub,
)

logger = logging.getLogger("feedsync.handlers")

FEED_NOT_FOUND_RETRY = timedelta(hours=1)

Fetcher = Callable[[Feed, Config], FetchResult]


def handle_fetch_feed(
    conn: Any,
    config: Config,
    job: Job,
    *,
    fetch: Fetcher = fetch_feed,
    now: datetime | None = None,
) -> HandlerResult:
    now = now or utc_now()
    feed_id = str(job.payload.get("feed_id", ""))
    feed = get_feed(conn, feed_id)
    if feed is None:
        return HandlerResult(False, now + FEED_NOT_FOUND_RETRY, error=f"Feed not found: {feed_id}")

    result = fetch(feed, config)

    if result.status == FETCH_REDIRECT and result.redirect_url:
        outcome = handle_permanent_redirect(conn, feed, result.redirect_url)
        return HandlerResult(
            True,
            now,
            metadata={"redirect_url": result.redirect_url, "merged_into": outcome.merged_into},
        )

    if result.status in (FETCH_OK, FETCH_NOT_MODIFIED):
        if result.status == FETCH_OK:
            _sync_push_channel(conn, config, feed, result, now)
        refreshed = get_feed(conn, feed.id) or feed
        next_fetch = calculate_next_fetch(
            result.cache_control,
            0,
            now,
            feed_hints=result.feed_hints,
            websub_active=refreshed.websub_active,
            config=config.backoff,
            random_source=random.random,
        )
        record_feed_fetch_success(
            conn,
            feed.id,
            next_fetch_at=next_fetch.next_run_at,
            etag=result.etag,
            last_modified=result.last_modified,
            title=result.title,
            now=now,
        )
        return HandlerResult(
            True,
            next_fetch.next_run_at,
            metadata={
                "status": result.status,
                "reason": next_fetch.reason,
                "entries": result.entry_count,
            },
        )

    error = result.error or f"Fetch failed with status {result.http_status}"
    failures = record_feed_fetch_failure(conn, feed.id, error, now=now)
    if result.status == FETCH_CLIENT_ERROR:
        next_run_at = now + timedelta(seconds=config.backoff.max_interval_seconds)
        reason = "permanent_client_error"
    else:
        next_fetch = calculate_next_fetch(
            None, failures, now, config=config.backoff, random_source=random.random
        )
        next_run_at = next_fetch.next_run_at
        reason = next_fetch.reason
    set_feed_next_fetch(conn, feed.id, next_run_at)
    log_event(
        logger,
        logging.WARNING,
        "feed_fetch_failed",
        feed_id=feed.id,
        http_status=result.http_status,
        failures=failures,
        reason=reason,
    )
    return HandlerResult(False, next_run_at, error=error, metadata={"reason": reason})


def _sync_push_channel(
    conn: Any, config: Config, feed: Feed, result: FetchResult, now: datetime
) -> None:
    if result.hub_url == feed.hub_url and result.self_url == feed.self_url:
        hub_changed = False
    else:
        update_feed_push_metadata(conn, feed.id, hub_url=result.hub_url, self_url=result.self_url)
        hub_changed = result.hub_url != feed.hub_url

    if feed.hub_url and not result.hub_url:
        deactivate_websub(conn, feed.id)
        return
    if not result.hub_url or not can_use_websub(config):
        return
    existing = get_push_subscription(conn, feed.id, result.hub_url)
    if hub_changed or _needs_subscribe(config, existing, now):
        updated = get_feed(conn, feed.id) or feed
        subscribe_to_hub(conn, config, updated)


def handle_renew_websub(
    conn: Any,
    config: Config,
    job: Job,
    *,
    now: datetime | None = None,
) -> HandlerResult:
    now = now or utc_now()
    result = renew_expiring_subscriptions(
        conn, config, config.websub.renew_before_hours, now=now
    )
    return HandlerResult(
        True,
        now + timedelta(hours=config.websub.renew_interval_hours),
        metadata={
            "checked": result.checked,
            "renewed": result.renewed,
            "failed": result.failed,
        },
    )


def _needs_subscribe(
    config: Config, subscription: PushSubscription | None, now: datetime
) -> bool:
    """A hub the feed still advertises gets a fresh request unless one is live or recent."""
    if subscription is None or subscription.state == PUSH_UNSUBSCRIBED:
        return True
    if subscription.state == PUSH_PENDING and subscription.updated_at:
        age = now - parse_iso(subscription.updated_at)
        return age > timedelta(hours=config.websub.renew_interval_hours)
    return False

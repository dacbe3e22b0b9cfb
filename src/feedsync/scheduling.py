from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Callable

from .config import BackoffConfig
from .models import CacheControl, FeedHints, NextFetch
from .utils import utc_now

DEFAULT_BACKOFF = BackoffConfig()

PERIOD_SECONDS = {
    "hourly": 60 * 60,
    "daily": 24 * 60 * 60,
    "weekly": 7 * 24 * 60 * 60,
    "monthly": 30 * 24 * 60 * 60,
    "yearly": 365 * 24 * 60 * 60,
}


def parse_cache_control(header: str | None) -> CacheControl:
    if not header:
        return CacheControl()
    values: dict[str, object] = {}
    for raw in " ".join(header.lower().split()).split(","):
        directive = raw.strip()
        if not directive:
            continue
        if "=" in directive:
            name, _, value = directive.partition("=")
            seconds = _parse_seconds(value.strip().strip('"'))
            if seconds is None:
                continue
            if name.strip() == "max-age":
                values["max_age"] = seconds
            elif name.strip() == "s-maxage":
                values["s_max_age"] = seconds
            continue
        flag = directive.replace("-", "_")
        if flag in {"no_store", "no_cache", "private", "public", "must_revalidate", "immutable"}:
            values[flag] = True
    return CacheControl(**values)  # type: ignore[arg-type]


def _parse_seconds(value: str) -> int | None:
    digits = ""
    for ch in value:
        if not ch.isdigit():
            break
        digits += ch
    if not digits:
        return None
    return int(digits)


def effective_max_age(cache_control: CacheControl | None) -> int | None:
    if cache_control is None or cache_control.no_store:
        return None
    if cache_control.s_max_age is not None:
        return cache_control.s_max_age
    return cache_control.max_age


def calculate_failure_backoff(consecutive_failures: int, config: BackoffConfig = DEFAULT_BACKOFF) -> int:
    capped = min(consecutive_failures, config.max_consecutive_failures)
    if capped < 1:
        return 0
    return min(config.failure_base_seconds * 2 ** (capped - 1), config.max_interval_seconds)


def syndication_to_seconds(update_period: str | None, update_frequency: int | None = None) -> int | None:
    if not update_period:
        return None
    period_seconds = PERIOD_SECONDS.get(update_period.strip().lower())
    if period_seconds is None:
        return None
    frequency = 1 if update_frequency is None else update_frequency
    if frequency <= 0:
        return None
    return period_seconds // frequency


def calculate_jitter(interval_seconds: int, random_value: float, config: BackoffConfig = DEFAULT_BACKOFF) -> int:
    ceiling = min(interval_seconds * config.jitter_fraction, config.max_jitter_seconds)
    return int(math.floor(ceiling * random_value))


def _clamp(interval_seconds: int, base_reason: str, config: BackoffConfig) -> tuple[int, str]:
    if interval_seconds < config.min_interval_seconds:
        return config.min_interval_seconds, f"{base_reason}_clamped_min"
    if interval_seconds > config.max_interval_seconds:
        return config.max_interval_seconds, f"{base_reason}_clamped_max"
    return interval_seconds, base_reason


def _from_feed_hints(feed_hints: FeedHints | None, config: BackoffConfig) -> tuple[int, str] | None:
    if feed_hints is None:
        return None
    if feed_hints.ttl_minutes is not None and feed_hints.ttl_minutes > 0:
        return _clamp(feed_hints.ttl_minutes * 60, "ttl", config)
    seconds = syndication_to_seconds(feed_hints.update_period, feed_hints.update_frequency)
    if seconds is not None:
        return _clamp(seconds, "syndication", config)
    return None


def calculate_next_fetch(
    cache_control: CacheControl | None = None,
    consecutive_failures: int = 0,
    now: datetime | None = None,
    *,
    feed_hints: FeedHints | None = None,
    websub_active: bool = False,
    config: BackoffConfig = DEFAULT_BACKOFF,
    random_source: Callable[[], float] | None = None,
) -> NextFetch:
    """Pick the next fetch time for a feed.

    Failures win over every hint, then an active push channel, then
    Cache-Control, then in-feed hints (RSS ttl, syndication), then the default.
    Jitter is only added when ``random_source`` is given.
    """
    now = now or utc_now()
    max_age = effective_max_age(cache_control)
    hinted = _from_feed_hints(feed_hints, config)

    if consecutive_failures > 0:
        interval, reason = calculate_failure_backoff(consecutive_failures, config), "failure_backoff"
    elif websub_active:
        interval, reason = config.websub_backup_interval_seconds, "websub_backup"
    elif max_age is not None:
        interval, reason = _clamp(max_age, "cache_control", config)
    elif hinted is not None:
        interval, reason = hinted
    else:
        interval, reason = config.default_interval_seconds, "default"

    if random_source is not None:
        interval += calculate_jitter(interval, random_source(), config)

    return NextFetch(
        next_run_at=now + timedelta(seconds=interval),
        interval_seconds=interval,
        reason=reason,
    )

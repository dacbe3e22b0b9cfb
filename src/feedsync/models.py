from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

JOB_FETCH_FEED = "fetch_feed"
JOB_RENEW_WEBSUB = "renew_websub"

PUSH_PENDING = "pending"
PUSH_ACTIVE = "active"
PUSH_UNSUBSCRIBED = "unsubscribed"


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    payload: dict[str, object]
    enabled: bool
    next_run_at: str
    running_since: str | None
    last_run_at: str | None
    last_error: str | None
    consecutive_failures: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Feed:
    id: str
    url: str
    self_url: str | None
    hub_url: str | None
    websub_active: bool
    title: str | None
    etag: str | None
    last_modified: str | None
    consecutive_failures: int
    last_error: str | None
    last_fetched_at: str | None
    next_fetch_at: str | None


@dataclass(frozen=True)
class Subscription:
    id: str
    user_id: str
    feed_id: str
    previous_feed_ids: list[str]
    subscribed_at: str
    unsubscribed_at: str | None

    @property
    def active(self) -> bool:
        return self.unsubscribed_at is None

    @property
    def feed_ids(self) -> list[str]:
        return [self.feed_id, *self.previous_feed_ids]


@dataclass(frozen=True)
class PushSubscription:
    id: str
    feed_id: str
    hub_url: str
    topic_url: str
    callback_secret: str
    secret_key_id: str | None
    state: str
    lease_seconds: int | None
    expires_at: str | None
    last_challenge_at: str | None
    last_error: str | None
    unsubscribe_requested_at: str | None
    updated_at: str | None = None


@dataclass(frozen=True)
class CacheControl:
    max_age: int | None = None
    s_max_age: int | None = None
    no_store: bool = False
    no_cache: bool = False
    private: bool = False
    public: bool = False
    must_revalidate: bool = False
    immutable: bool = False


@dataclass(frozen=True)
class FeedHints:
    ttl_minutes: int | None = None
    update_period: str | None = None
    update_frequency: int | None = None


@dataclass(frozen=True)
class NextFetch:
    next_run_at: datetime
    interval_seconds: int
    reason: str


@dataclass(frozen=True)
class FetchResult:
    status: str
    http_status: int | None = None
    body: bytes | None = None
    final_url: str | None = None
    redirect_url: str | None = None
    cache_control: CacheControl | None = None
    etag: str | None = None
    last_modified: str | None = None
    hub_url: str | None = None
    self_url: str | None = None
    title: str | None = None
    feed_hints: FeedHints | None = None
    entry_count: int = 0
    permanent: bool = False
    error: str | None = None


@dataclass(frozen=True)
class HandlerResult:
    success: bool
    next_run_at: datetime
    error: str | None = None
    metadata: dict[str, object] = field(default_factory=dict)

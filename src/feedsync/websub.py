from __future__ import annotations

import hashlib
import hmac
import ipaddress
import logging
import secrets
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any
from urllib.error import HTTPError
from urllib.parse import urlencode, urlsplit
from urllib.request import Request, urlopen

from .config import Config
from .errors import VerificationError
from .models import PUSH_ACTIVE, PUSH_PENDING, PUSH_UNSUBSCRIBED, Feed, PushSubscription
from .security.secrets import SecretError, open_callback_secret, seal_callback_secret
from .storage import get_feed, set_feed_websub_active
from .utils import log_event, to_iso, utc_now

logger = logging.getLogger("feedsync.websub")

PRIVATE_HOSTNAMES = {"localhost", "127.0.0.1", "0.0.0.0", "::1"}
SIGNATURE_ALGORITHMS = {"sha1", "sha256", "sha384", "sha512"}
HUB_UNSUBSCRIBED_ERROR = "Unsubscribed by hub"
HUB_REMOVED_ERROR = "Hub URL removed from feed"

_PUSH_COLUMNS = (
    "id, feed_id, hub_url, topic_url, callback_secret, secret_key_id, state, lease_seconds, "
    "expires_at, last_challenge_at, last_error, unsubscribe_requested_at, updated_at"
)


@dataclass(frozen=True)
class HubResult:
    success: bool
    subscription_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RenewResult:
    checked: int
    renewed: int
    failed: int
    errors: list[str] = field(default_factory=list)


def _is_private_host(hostname: str) -> bool:
    host = hostname.strip("[]").lower()
    if host in PRIVATE_HOSTNAMES or host.endswith(".local"):
        return True
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_unspecified
    )


def can_use_websub(config: Config) -> bool:
    if not config.websub.enabled:
        return False
    base_url = config.app.public_url
    if not base_url:
        return False
    try:
        parts = urlsplit(base_url)
    except ValueError:
        return False
    if parts.scheme not in {"http", "https"} or not parts.hostname:
        return False
    if _is_private_host(parts.hostname):
        return False
    if config.app.is_production and parts.scheme != "https":
        return False
    return True


def generate_callback_secret() -> str:
    return secrets.token_hex(32)


def callback_url(config: Config, feed_id: str) -> str | None:
    if not can_use_websub(config):
        return None
    return f"{config.app.public_url.rstrip('/')}{config.websub.callback_path}/{feed_id}"


def _post_form(url: str, fields: dict[str, str], timeout: int, user_agent: str) -> tuple[int, str]:
    request = Request(
        url,
        data=urlencode(fields).encode("utf-8"),
        headers={
            "Content-Type": "application/x-www-form-urlencoded",
            "User-Agent": user_agent,
        },
        method="POST",
    )
    try:
        with urlopen(request, timeout=timeout) as response:
            return response.getcode(), response.read().decode("utf-8", errors="replace")
    except HTTPError as exc:
        return exc.code, exc.read().decode("utf-8", errors="replace")


def get_push_subscription(
    conn: Any, feed_id: str, hub_url: str | None = None
) -> PushSubscription | None:
    if hub_url:
        row = conn.execute(
            f"SELECT {_PUSH_COLUMNS} FROM websub_subscriptions WHERE feed_id = ? AND hub_url = ?",
            (feed_id, hub_url),
        ).fetchone()
    else:
        row = conn.execute(
            f"""
            SELECT {_PUSH_COLUMNS}
            FROM websub_subscriptions
            WHERE feed_id = ?
            ORDER BY CASE WHEN state = 'unsubscribed' THEN 1 ELSE 0 END, updated_at DESC
            LIMIT 1
            """,
            (feed_id,),
        ).fetchone()
    return _row_to_push(row) if row else None


def list_push_subscriptions(conn: Any, *, state: str | None = None) -> list[PushSubscription]:
    if state:
        cursor = conn.execute(
            f"SELECT {_PUSH_COLUMNS} FROM websub_subscriptions WHERE state = ? ORDER BY updated_at",
            (state,),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_PUSH_COLUMNS} FROM websub_subscriptions ORDER BY updated_at"
        )
    return [_row_to_push(row) for row in cursor.fetchall()]


def subscribe_to_hub(conn: Any, config: Config, feed: Feed) -> HubResult:
    if not feed.hub_url:
        return HubResult(False, error="Feed has no hub URL")
    if not can_use_websub(config):
        return HubResult(False, error="WebSub is not available (no public callback URL)")
    callback = callback_url(config, feed.id)
    if not callback:
        return HubResult(False, error="Could not generate callback URL")
    topic = feed.self_url or feed.url
    if not topic:
        return HubResult(False, error="Feed has no topic URL")

    secret = generate_callback_secret()
    key_id, stored_secret = seal_callback_secret(secret, feed.id)
    now = to_iso(utc_now())
    with conn.transaction():
        existing = get_push_subscription(conn, feed.id, feed.hub_url)
        if existing:
            subscription_id = existing.id
            conn.execute(
                """
                UPDATE websub_subscriptions
                SET topic_url = ?, callback_secret = ?, secret_key_id = ?, state = ?,
                    last_error = NULL, unsubscribe_requested_at = NULL, updated_at = ?
                WHERE id = ?
                """,
                (topic, stored_secret, key_id, PUSH_PENDING, now, subscription_id),
            )
        else:
            subscription_id = str(uuid.uuid4())
            conn.execute(
                f"""
                INSERT INTO websub_subscriptions ({_PUSH_COLUMNS}, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, NULL, NULL, NULL, NULL, NULL, ?, ?)
                """,
                (
                    subscription_id,
                    feed.id,
                    feed.hub_url,
                    topic,
                    stored_secret,
                    key_id,
                    PUSH_PENDING,
                    now,
                    now,
                ),
            )
    log_event(
        logger,
        logging.DEBUG,
        "websub_subscription_pending",
        subscription_id=subscription_id,
        feed_id=feed.id,
        hub_url=feed.hub_url,
    )

    fields = {
        "hub.mode": "subscribe",
        "hub.topic": topic,
        "hub.callback": callback,
        "hub.secret": secret,
        "hub.verify": "async",
    }
    error = _send_hub_request(config, feed.hub_url, fields)
    if error is None:
        log_event(
            logger,
            logging.INFO,
            "websub_subscribe_accepted",
            subscription_id=subscription_id,
            feed_id=feed.id,
            hub_url=feed.hub_url,
        )
        return HubResult(True, subscription_id=subscription_id)
    _set_push_error(conn, subscription_id, error)
    log_event(
        logger,
        logging.WARNING,
        "websub_subscribe_failed",
        subscription_id=subscription_id,
        feed_id=feed.id,
        error=error,
    )
    return HubResult(False, subscription_id=subscription_id, error=error)


def unsubscribe_from_hub(conn: Any, config: Config, feed: Feed) -> HubResult:
    subscription = get_push_subscription(conn, feed.id, feed.hub_url) if feed.hub_url else None
    if subscription is None or subscription.state == PUSH_UNSUBSCRIBED:
        return HubResult(False, error="No push subscription to cancel")
    callback = callback_url(config, feed.id)
    if not callback:
        return HubResult(False, subscription.id, "WebSub is not available (no public callback URL)")
    now = to_iso(utc_now())
    conn.execute(
        """
        UPDATE websub_subscriptions
        SET unsubscribe_requested_at = ?, updated_at = ?
        WHERE id = ?
        """,
        (now, now, subscription.id),
    )
    conn.commit()
    fields = {
        "hub.mode": "unsubscribe",
        "hub.topic": subscription.topic_url,
        "hub.callback": callback,
        "hub.verify": "async",
    }
    error = _send_hub_request(config, subscription.hub_url, fields)
    if error is not None:
        _set_push_error(conn, subscription.id, error)
        log_event(logger, logging.WARNING, "websub_unsubscribe_failed", feed_id=feed.id, error=error)
        return HubResult(False, subscription.id, error)
    log_event(logger, logging.INFO, "websub_unsubscribe_requested", feed_id=feed.id)
    return HubResult(True, subscription.id)


def _send_hub_request(config: Config, hub_url: str, fields: dict[str, str]) -> str | None:
    try:
        status, text = _post_form(
            hub_url, fields, config.http.timeout_seconds, config.http.user_agent
        )
    except Exception as exc:  # noqa: BLE001
        return str(exc) or exc.__class__.__name__
    if status in (202, 204):
        return None
    return f"Hub returned {status}: {text[: config.http.max_error_body]}"


def _set_push_error(conn: Any, subscription_id: str, error: str) -> None:
    conn.execute(
        "UPDATE websub_subscriptions SET last_error = ?, updated_at = ? WHERE id = ?",
        (error, to_iso(utc_now()), subscription_id),
    )
    conn.commit()


def handle_verification_challenge(
    conn: Any,
    feed_id: str,
    *,
    mode: str | None,
    topic: str | None,
    challenge: str | None,
    lease_seconds: str | int | None,
    now: datetime | None = None,
) -> str:
    """Validate a hub's verification GET and return the challenge to echo.

    Raises VerificationError when the request must be refused.
    """
    if not mode or not topic or not challenge:
        raise VerificationError("missing_parameters")
    if mode not in ("subscribe", "unsubscribe"):
        raise VerificationError("unsupported_mode", f"Unsupported hub.mode: {mode}")
    lease: int | None = None
    if mode == "subscribe":
        if lease_seconds is None or lease_seconds == "":
            raise VerificationError("missing_parameters", "hub.lease_seconds is required")
        try:
            lease = int(lease_seconds)
        except (TypeError, ValueError) as exc:
            raise VerificationError("invalid_lease") from exc
        if lease <= 0:
            raise VerificationError("invalid_lease")

    subscription = get_push_subscription(conn, feed_id)
    if subscription is None:
        log_event(logger, logging.WARNING, "websub_challenge_unknown", feed_id=feed_id, mode=mode)
        raise VerificationError("subscription_not_found")
    if subscription.topic_url != topic:
        log_event(
            logger,
            logging.WARNING,
            "websub_topic_mismatch",
            feed_id=feed_id,
            expected=subscription.topic_url,
            received=topic,
        )
        raise VerificationError("topic_mismatch")

    now = now or utc_now()
    now_iso = to_iso(now)
    with conn.transaction():
        if mode == "subscribe":
            assert lease is not None
            conn.execute(
                """
                UPDATE websub_subscriptions
                SET state = ?, lease_seconds = ?, expires_at = ?, last_challenge_at = ?,
                    last_error = NULL, updated_at = ?
                WHERE id = ?
                """,
                (
                    PUSH_ACTIVE,
                    lease,
                    to_iso(now + timedelta(seconds=lease)),
                    now_iso,
                    now_iso,
                    subscription.id,
                ),
            )
            set_feed_websub_active(conn, feed_id, True)
        else:
            hub_initiated = subscription.unsubscribe_requested_at is None
            conn.execute(
                """
                UPDATE websub_subscriptions
                SET state = ?, last_challenge_at = ?, last_error = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    PUSH_UNSUBSCRIBED,
                    now_iso,
                    HUB_UNSUBSCRIBED_ERROR if hub_initiated else subscription.last_error,
                    now_iso,
                    subscription.id,
                ),
            )
            set_feed_websub_active(conn, feed_id, False)
    log_event(
        logger,
        logging.INFO,
        "websub_verified",
        feed_id=feed_id,
        mode=mode,
        lease_seconds=lease,
    )
    return challenge


def verify_hmac_signature(
    conn: Any, feed_id: str, signature_header: str | None, raw_body: bytes
) -> bool:
    if not signature_header:
        log_event(logger, logging.WARNING, "websub_signature_missing", feed_id=feed_id)
        return False
    algorithm, sep, provided = signature_header.strip().partition("=")
    algorithm = algorithm.strip().lower()
    if not sep or not provided or algorithm not in SIGNATURE_ALGORITHMS:
        log_event(logger, logging.WARNING, "websub_signature_malformed", feed_id=feed_id)
        return False

    row = conn.execute(
        f"""
        SELECT {_PUSH_COLUMNS}
        FROM websub_subscriptions
        WHERE feed_id = ? AND state = ?
        ORDER BY updated_at DESC
        LIMIT 1
        """,
        (feed_id, PUSH_ACTIVE),
    ).fetchone()
    if not row:
        log_event(logger, logging.WARNING, "websub_signature_no_active_subscription", feed_id=feed_id)
        return False
    subscription = _row_to_push(row)
    try:
        secret = open_callback_secret(
            subscription.callback_secret, subscription.secret_key_id, feed_id
        )
    except SecretError as exc:
        log_event(logger, logging.ERROR, "websub_secret_unavailable", feed_id=feed_id, error=exc)
        return False

    expected = hmac.new(secret.encode("utf-8"), raw_body, getattr(hashlib, algorithm)).hexdigest()
    provided = provided.strip().lower()
    if len(provided) != len(expected) or not hmac.compare_digest(
        provided.encode("ascii", errors="replace"), expected.encode("ascii")
    ):
        log_event(logger, logging.WARNING, "websub_signature_rejected", feed_id=feed_id)
        return False
    return True


def renew_expiring_subscriptions(
    conn: Any,
    config: Config,
    hours_before_expiry: int = 24,
    *,
    now: datetime | None = None,
) -> RenewResult:
    now = now or utc_now()
    threshold = to_iso(now + timedelta(hours=hours_before_expiry))
    cursor = conn.execute(
        f"""
        SELECT {_PUSH_COLUMNS}
        FROM websub_subscriptions
        WHERE state = ? AND expires_at IS NOT NULL AND expires_at < ?
        ORDER BY expires_at ASC
        """,
        (PUSH_ACTIVE, threshold),
    )
    expiring = [_row_to_push(row) for row in cursor.fetchall()]
    renewed = 0
    errors: list[str] = []
    for subscription in expiring:
        feed = get_feed(conn, subscription.feed_id)
        if feed is None:
            result = HubResult(False, subscription.id, "Feed not found")
        else:
            result = subscribe_to_hub(conn, config, replace(feed, hub_url=subscription.hub_url))
        if result.success:
            renewed += 1
            continue
        error = result.error or "Renewal failed"
        errors.append(f"{subscription.feed_id}: {error}")
        _fall_back_to_polling(conn, subscription, error)
    log_event(
        logger,
        logging.INFO,
        "websub_renewal_complete",
        checked=len(expiring),
        renewed=renewed,
        failed=len(errors),
    )
    return RenewResult(checked=len(expiring), renewed=renewed, failed=len(errors), errors=errors)


def _fall_back_to_polling(conn: Any, subscription: PushSubscription, error: str) -> None:
    now_iso = to_iso(utc_now())
    with conn.transaction():
        conn.execute(
            """
            UPDATE websub_subscriptions
            SET state = ?, last_error = ?, updated_at = ?
            WHERE id = ?
            """,
            (PUSH_UNSUBSCRIBED, error, now_iso, subscription.id),
        )
        set_feed_websub_active(conn, subscription.feed_id, False)
    log_event(
        logger,
        logging.WARNING,
        "websub_renewal_failed",
        feed_id=subscription.feed_id,
        error=error,
    )


def deactivate_websub(conn: Any, feed_id: str) -> bool:
    now_iso = to_iso(utc_now())
    with conn.transaction():
        cursor = conn.execute(
            """
            UPDATE websub_subscriptions
            SET state = ?, last_error = ?, unsubscribe_requested_at = ?, updated_at = ?
            WHERE feed_id = ? AND state = ?
            """,
            (PUSH_UNSUBSCRIBED, HUB_REMOVED_ERROR, now_iso, now_iso, feed_id, PUSH_ACTIVE),
        )
        changed = cursor.rowcount > 0
        set_feed_websub_active(conn, feed_id, False)
    if changed:
        log_event(logger, logging.INFO, "websub_deactivated", feed_id=feed_id)
    return changed


def _row_to_push(row: tuple) -> PushSubscription:
    (
        subscription_id,
        feed_id,
        hub_url,
        topic_url,
        callback_secret,
        secret_key_id,
        state,
        lease_seconds,
        expires_at,
        last_challenge_at,
        last_error,
        unsubscribe_requested_at,
        updated_at,
    ) = row
    return PushSubscription(
        id=subscription_id,
        feed_id=feed_id,
        hub_url=hub_url,
        topic_url=topic_url,
        callback_secret=callback_secret,
        secret_key_id=secret_key_id,
        state=state,
        lease_seconds=int(lease_seconds) if lease_seconds is not None else None,
        expires_at=expires_at,
        last_challenge_at=last_challenge_at,
        last_error=last_error,
        unsubscribe_requested_at=unsubscribe_requested_at,
        updated_at=updated_at,
    )

from __future__ import annotations

import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Iterator

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from . import __version__
from .config import Config, load_config
from .db import connect_db
from .errors import VerificationError
from .storage import (
    get_feed,
    get_or_create_feed,
    list_jobs,
    subscribe_user,
    unsubscribe_user,
    update_feed_job_next_run,
)
from .utils import configure_logging, log_event, utc_now
from .websub import handle_verification_challenge, verify_hmac_signature

logger = logging.getLogger("feedsync.api")


class JobView(BaseModel):
    id: str
    job_type: str
    payload: dict
    enabled: bool
    next_run_at: str
    running_since: str | None = None
    last_run_at: str | None = None
    last_error: str | None = None
    consecutive_failures: int = 0


class SubscriptionRequest(BaseModel):
    user_id: str
    feed: str


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("FS_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _valid_feed_id(feed_id: str) -> str:
    try:
        uuid.UUID(feed_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="invalid feed id") from exc
    return feed_id


def create_app(config: Config | None = None) -> FastAPI:
    config = config or load_config()
    configure_logging("feedsync.api")
    app = FastAPI(title="feedsync")
    app.state.config = config

    def get_conn() -> Iterator[Any]:
        conn = connect_db(config.paths.state_db)
        try:
            yield conn
        finally:
            conn.close()

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "ok": True,
            "version": __version__,
            "time": datetime.now(tz=timezone.utc).isoformat(),
        }

    @app.get(config.websub.callback_path + "/{feed_id}", response_class=PlainTextResponse)
    def websub_verify(feed_id: str, request: Request, conn: Any = Depends(get_conn)) -> PlainTextResponse:
        _valid_feed_id(feed_id)
        params = request.query_params
        try:
            challenge = handle_verification_challenge(
                conn,
                feed_id,
                mode=params.get("hub.mode"),
                topic=params.get("hub.topic"),
                challenge=params.get("hub.challenge"),
                lease_seconds=params.get("hub.lease_seconds"),
            )
        except VerificationError as exc:
            log_event(logger, logging.WARNING, "websub_challenge_rejected", feed_id=feed_id, reason=exc.reason)
            raise HTTPException(status_code=404, detail=exc.reason) from exc
        return PlainTextResponse(challenge, status_code=200)

    @app.post(config.websub.callback_path + "/{feed_id}", response_class=PlainTextResponse)
    async def websub_notify(
        feed_id: str, request: Request, conn: Any = Depends(get_conn)
    ) -> PlainTextResponse:
        _valid_feed_id(feed_id)
        body = await request.body()
        signature = request.headers.get("X-Hub-Signature")
        verified = await run_in_threadpool(verify_hmac_signature, conn, feed_id, signature, body)
        if not verified:
            raise HTTPException(status_code=403, detail="invalid signature")
        job = await run_in_threadpool(update_feed_job_next_run, conn, feed_id, utc_now())
        log_event(
            logger,
            logging.INFO,
            "websub_notification_accepted",
            feed_id=feed_id,
            bytes=len(body),
            job_id=job.id if job else None,
        )
        return PlainTextResponse("ok", status_code=200)

    @app.get("/admin/jobs", dependencies=[Depends(_require_admin_token)])
    def admin_jobs(
        enabled: bool | None = None,
        job_type: str | None = None,
        limit: int = 100,
        conn: Any = Depends(get_conn),
    ) -> list[JobView]:
        jobs = list_jobs(conn, enabled=enabled, job_type=job_type, limit=min(limit, 500))
        return [
            JobView(
                id=job.id,
                job_type=job.job_type,
                payload=job.payload,
                enabled=job.enabled,
                next_run_at=job.next_run_at,
                running_since=job.running_since,
                last_run_at=job.last_run_at,
                last_error=job.last_error,
                consecutive_failures=job.consecutive_failures,
            )
            for job in jobs
        ]

    @app.post("/admin/subscriptions", dependencies=[Depends(_require_admin_token)])
    def admin_subscribe(
        payload: SubscriptionRequest, conn: Any = Depends(get_conn)
    ) -> dict[str, str]:
        if not payload.user_id.strip() or not payload.feed.strip():
            raise HTTPException(status_code=400, detail="user_id and feed are required")
        feed = get_feed(conn, payload.feed)
        if feed is None:
            if not payload.feed.startswith(("http://", "https://")):
                raise HTTPException(status_code=404, detail="feed not found")
            feed = get_or_create_feed(conn, payload.feed)
        subscription = subscribe_user(conn, payload.user_id, feed.id)
        return {"subscription_id": subscription.id, "feed_id": feed.id}

    @app.delete(
        "/admin/subscriptions/{user_id}/{feed_id}",
        dependencies=[Depends(_require_admin_token)],
    )
    def admin_unsubscribe(user_id: str, feed_id: str, conn: Any = Depends(get_conn)) -> dict[str, bool]:
        if not unsubscribe_user(conn, user_id, feed_id):
            raise HTTPException(status_code=404, detail="subscription not found")
        return {"ok": True}

    return app

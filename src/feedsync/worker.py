from __future__ import annotations

import argparse
import logging
import os
import random
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Any

from .config import Config, ConfigError, load_config
from .db import connect_db
from .errors import InvalidJobPayload
from .handlers import Fetcher, handle_fetch_feed, handle_renew_websub
from .fetcher import fetch_feed
from .models import JOB_FETCH_FEED, JOB_RENEW_WEBSUB, HandlerResult, Job
from .scheduling import calculate_next_fetch
from .storage import claim_job, claim_singleton_job, finish_job, validate_job_payload
from .utils import configure_logging, log_event, utc_now

WORKER_JOB_TYPES = [JOB_RENEW_WEBSUB, JOB_FETCH_FEED]


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsync.worker")


def claim_next(conn: Any, config: Config, allowed_types: list[str] | None = None) -> Job | None:
    types = allowed_types or WORKER_JOB_TYPES
    stale = config.jobs.stale_after_seconds
    if JOB_RENEW_WEBSUB in types:
        job = claim_singleton_job(conn, JOB_RENEW_WEBSUB, stale_after_seconds=stale)
        if job:
            return job
    others = [job_type for job_type in types if job_type != JOB_RENEW_WEBSUB]
    if not others:
        return None
    return claim_job(conn, types=others, stale_after_seconds=stale)


def process_next_job(
    conn: Any,
    config: Config,
    allowed_types: list[str] | None = None,
    *,
    fetch: Fetcher = fetch_feed,
    logger: logging.Logger | None = None,
) -> Job | None:
    logger = logger or logging.getLogger("feedsync.worker")
    job = claim_next(conn, config, allowed_types)
    if not job:
        return None
    return _process_claimed_job(conn, config, job, logger, fetch=fetch)


def _process_claimed_job(
    conn: Any,
    config: Config,
    job: Job,
    logger: logging.Logger,
    *,
    fetch: Fetcher = fetch_feed,
) -> Job:
    started = time.monotonic()
    try:
        result = run_claimed_job(conn, config, job, fetch=fetch)
    except Exception as exc:  # noqa: BLE001
        now = utc_now()
        result = HandlerResult(
            False,
            _failure_next_run(config, job, now),
            error=str(exc) or exc.__class__.__name__,
        )
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=result.error,
        )
    finished = finish_job(
        conn,
        job.id,
        success=result.success,
        next_run_at=result.next_run_at,
        error=result.error,
    )
    log_event(
        logger,
        logging.INFO if result.success else logging.WARNING,
        "job_processed",
        job_id=job.id,
        job_type=job.job_type,
        success=result.success,
        duration_ms=int((time.monotonic() - started) * 1000),
        **{key: value for key, value in result.metadata.items() if value is not None},
    )
    return finished


def _failure_next_run(config: Config, job: Job, now: datetime) -> datetime:
    return calculate_next_fetch(
        None,
        job.consecutive_failures + 1,
        now,
        config=config.backoff,
        random_source=random.random,
    ).next_run_at


def run_claimed_job(conn: Any, config: Config, job: Job, *, fetch: Fetcher = fetch_feed) -> HandlerResult:
    validate_job_payload(job.job_type, job.payload)
    if job.job_type == JOB_FETCH_FEED:
        return handle_fetch_feed(conn, config, job, fetch=fetch)
    if job.job_type == JOB_RENEW_WEBSUB:
        return handle_renew_websub(conn, config, job)
    raise InvalidJobPayload(f"Unknown job type: {job.job_type}")


def _open(config: Config) -> Any:
    return connect_db(config.paths.state_db)


def run_once(worker_id: str, allowed_types: list[str] | None = None) -> int:
    logger = _setup_logging()
    try:
        config = load_config()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    conn = _open(config)
    try:
        job = process_next_job(conn, config, allowed_types, logger=logger)
    finally:
        conn.close()
    if job is None:
        log_event(logger, logging.DEBUG, "worker_idle", worker_id=worker_id)
    return 0


def _process_claimed_job_thread(config: Config, job: Job) -> None:
    logger = logging.getLogger("feedsync.worker")
    conn = _open(config)
    try:
        _process_claimed_job(conn, config, job, logger)
    finally:
        conn.close()


def _loop_settings(
    config: Config, sleep_seconds: int | None, concurrency: int | None
) -> tuple[int, int]:
    """Command line values win; otherwise the jobs section of the config applies."""
    if sleep_seconds is None:
        sleep_seconds = config.jobs.poll_interval_seconds
    if concurrency is None:
        concurrency = config.jobs.concurrency
    return max(1, sleep_seconds), max(1, concurrency)

def run_loop(
    worker_id: str,
    sleep_seconds: int | None = None,
    allowed_types: list[str] | None = None,
    concurrency: int | None = None,
) -> int:
    logger = _setup_logging()
    try:
        config = load_config()
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    sleep_seconds, concurrency = _loop_settings(config, sleep_seconds, concurrency)
    log_event(
        logger,
        logging.INFO,
        "worker_started",
        worker_id=worker_id,
        concurrency=concurrency,
        types=",".join(allowed_types or WORKER_JOB_TYPES),
    )
    if concurrency <= 1:
        conn = _open(config)
        try:
            while True:
                if process_next_job(conn, config, allowed_types, logger=logger) is None:
                    time.sleep(sleep_seconds)
        finally:
            conn.close()

    max_workers = max(1, concurrency)
    claim_conn = _open(config)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                job = claim_next(claim_conn, config, allowed_types)
                if not job:
                    break
                futures.add(executor.submit(_process_claimed_job_thread, config, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    types = [item.strip() for item in value.split(",") if item.strip()]
    return types or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=None, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-job-types", default=os.environ.get("FS_WORKER_ONLY_TYPES", ""))
    parser.add_argument("--concurrency", type=int, default=None, help="Worker threads")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_job_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())

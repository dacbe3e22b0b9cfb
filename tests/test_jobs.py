import threading
from datetime import timedelta

import pytest

from feedsync.db import connect_db
from feedsync.errors import DuplicateJobError, InvalidJobPayload, JobNotFoundError
from feedsync.models import JOB_FETCH_FEED, JOB_RENEW_WEBSUB
from feedsync.storage import (
    claim_job,
    claim_singleton_job,
    create_feed,
    create_job,
    create_or_enable_feed_job,
    enable_feed_job,
    finish_job,
    get_feed_job,
    get_job,
    list_jobs,
    subscribe_user,
    sync_feed_job_enabled,
    unsubscribe_user,
    update_feed_job_next_run,
)
from feedsync.utils import to_iso, utc_now


def _past(minutes: int) -> str:
    return to_iso(utc_now() - timedelta(minutes=minutes))


def test_claim_is_exclusive_across_concurrent_workers(db_path):
    setup = connect_db(db_path)
    job = create_job(setup, JOB_FETCH_FEED, {"feed_id": "feed-1"}, next_run_at=_past(1))
    setup.close()

    workers = 5
    barrier = threading.Barrier(workers)
    results: list[object] = []
    errors: list[BaseException] = []
    lock = threading.Lock()

    def worker() -> None:
        conn = connect_db(db_path)
        try:
            barrier.wait()
            claimed = claim_job(conn)
            with lock:
                results.append(claimed)
        except BaseException as exc:  # noqa: BLE001
            with lock:
                errors.append(exc)
        finally:
            conn.close()

    threads = [threading.Thread(target=worker) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    claimed = [item for item in results if item is not None]
    assert len(claimed) == 1
    assert results.count(None) == workers - 1
    assert claimed[0].id == job.id
    assert claimed[0].running_since is not None


def test_claim_returns_oldest_due_first(conn):
    later = create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-b"}, next_run_at=_past(5))
    earlier = create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-a"}, next_run_at=_past(10))

    first = claim_job(conn)
    assert first is not None and first.id == earlier.id
    finish_job(conn, first.id, success=True, next_run_at=utc_now() + timedelta(hours=1))

    second = claim_job(conn)
    assert second is not None and second.id == later.id
    assert claim_job(conn) is None


def test_claim_skips_disabled_and_future_jobs(conn):
    create_job(conn, JOB_FETCH_FEED, {"feed_id": "off"}, next_run_at=_past(5), enabled=False)
    create_job(conn, JOB_FETCH_FEED, {"feed_id": "later"}, next_run_at=utc_now() + timedelta(minutes=5))
    assert claim_job(conn) is None


def test_claim_filters_by_type(conn):
    create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-1"}, next_run_at=_past(5))
    assert claim_job(conn, types=[JOB_RENEW_WEBSUB]) is None
    assert claim_job(conn, types=[JOB_FETCH_FEED]) is not None


def test_stale_claim_is_reclaimable(conn):
    stale = create_job(conn, JOB_FETCH_FEED, {"feed_id": "stale"}, next_run_at=_past(30))
    fresh = create_job(conn, JOB_FETCH_FEED, {"feed_id": "fresh"}, next_run_at=_past(20))
    conn.execute("UPDATE jobs SET running_since = ? WHERE id = ?", (_past(10), stale.id))
    conn.execute("UPDATE jobs SET running_since = ? WHERE id = ?", (_past(1), fresh.id))

    reclaimed = claim_job(conn)
    assert reclaimed is not None
    assert reclaimed.id == stale.id
    assert claim_job(conn) is None


def test_stale_window_is_configurable(conn):
    job = create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-1"}, next_run_at=_past(30))
    conn.execute("UPDATE jobs SET running_since = ? WHERE id = ?", (_past(1), job.id))
    assert claim_job(conn, stale_after_seconds=30) is not None


def test_finish_success_and_failure_counters(conn):
    job = create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-1"}, next_run_at=_past(1))
    claim_job(conn)
    next_run = utc_now() + timedelta(minutes=30)

    failed = finish_job(conn, job.id, success=False, next_run_at=next_run)
    assert failed.consecutive_failures == 1
    assert failed.last_error == "Unknown error"
    assert failed.running_since is None
    assert failed.last_run_at is not None
    assert failed.next_run_at == to_iso(next_run)

    failed = finish_job(conn, job.id, success=False, next_run_at=next_run, error="HTTP 500")
    assert failed.consecutive_failures == 2
    assert failed.last_error == "HTTP 500"

    succeeded = finish_job(conn, job.id, success=True, next_run_at=next_run)
    assert succeeded.consecutive_failures == 0
    assert succeeded.last_error is None


def test_finish_missing_job_raises(conn):
    with pytest.raises(JobNotFoundError):
        finish_job(conn, "job_missing", success=True, next_run_at=utc_now())


def test_create_job_validates_payload(conn):
    with pytest.raises(InvalidJobPayload):
        create_job(conn, JOB_FETCH_FEED, {})
    with pytest.raises(InvalidJobPayload):
        create_job(conn, "reticulate_splines", {})


def test_list_jobs_filters_without_side_effects(conn):
    create_job(conn, JOB_FETCH_FEED, {"feed_id": "a"}, next_run_at=_past(3))
    create_job(conn, JOB_FETCH_FEED, {"feed_id": "b"}, next_run_at=_past(2), enabled=False)
    create_job(conn, JOB_RENEW_WEBSUB, {}, next_run_at=_past(1))

    assert len(list_jobs(conn)) == 3
    assert [job.payload["feed_id"] for job in list_jobs(conn, enabled=False)] == ["b"]
    assert len(list_jobs(conn, job_type=JOB_RENEW_WEBSUB)) == 1
    assert len(list_jobs(conn, limit=2)) == 2
    assert all(job.running_since is None for job in list_jobs(conn))


def test_create_or_enable_feed_job_is_idempotent(conn):
    feed = create_feed(conn, "https://example.com/feed.xml")
    first = create_or_enable_feed_job(conn, feed.id)
    conn.execute("UPDATE jobs SET enabled = 0 WHERE id = ?", (first.id,))

    second = create_or_enable_feed_job(conn, feed.id)
    assert second.id == first.id
    assert second.enabled is True
    assert len(list_jobs(conn, job_type=JOB_FETCH_FEED)) == 1


def test_enable_feed_job_missing_returns_none(conn):
    assert enable_feed_job(conn, "no-such-feed") is None
    assert update_feed_job_next_run(conn, "no-such-feed", utc_now()) is None


def test_sync_feed_job_enabled_tracks_subscribers(conn):
    feed = create_feed(conn, "https://example.com/feed.xml")
    subscribe_user(conn, "user-1", feed.id)
    subscribe_user(conn, "user-2", feed.id)
    assert get_feed_job(conn, feed.id).enabled is True

    unsubscribe_user(conn, "user-1", feed.id)
    assert get_feed_job(conn, feed.id).enabled is True

    unsubscribe_user(conn, "user-2", feed.id)
    job = get_feed_job(conn, feed.id)
    assert job is not None and job.enabled is False

    conn.execute("UPDATE jobs SET enabled = 1 WHERE id = ?", (job.id,))
    assert sync_feed_job_enabled(conn, feed.id).enabled is False


def test_update_feed_job_next_run(conn):
    feed = create_feed(conn, "https://example.com/feed.xml")
    create_or_enable_feed_job(conn, feed.id, next_run_at=utc_now() + timedelta(days=1))
    now = utc_now()
    job = update_feed_job_next_run(conn, feed.id, now)
    assert job is not None
    assert job.next_run_at == to_iso(now)


def test_singleton_job_created_on_first_claim(conn):
    first = claim_singleton_job(conn, JOB_RENEW_WEBSUB)
    assert first is not None
    assert claim_singleton_job(conn, JOB_RENEW_WEBSUB) is None

    finish_job(conn, first.id, success=True, next_run_at=utc_now() + timedelta(hours=24))
    assert claim_singleton_job(conn, JOB_RENEW_WEBSUB) is None
    assert len(list_jobs(conn, job_type=JOB_RENEW_WEBSUB)) == 1
    assert get_job(conn, first.id).last_run_at is not None

    with pytest.raises(ValueError):
        claim_singleton_job(conn, JOB_FETCH_FEED)


def test_second_fetch_job_for_feed_is_a_typed_error(conn):
    first = create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-1"}, next_run_at=_past(5))
    with pytest.raises(DuplicateJobError) as excinfo:
        create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-1"})
    assert excinfo.value.feed_id == "feed-1"
    assert [job.id for job in list_jobs(conn, job_type=JOB_FETCH_FEED)] == [first.id]
    assert create_job(conn, JOB_FETCH_FEED, {"feed_id": "feed-2"}).id != first.id

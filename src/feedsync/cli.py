from __future__ import annotations

import argparse
import logging
from typing import Any, Callable

from .config import Config, ConfigError, load_config
from .db import connect_db, copy_sqlite_to_postgres, get_db_url
from .storage import (
    get_feed,
    get_or_create_feed,
    list_jobs,
    subscribe_user,
    unsubscribe_user,
)
from .utils import configure_logging, log_event
from .websub import list_push_subscriptions, renew_expiring_subscriptions

Command = Callable[[argparse.Namespace, Config, Any, logging.Logger], int]


def _setup_logging() -> logging.Logger:
    return configure_logging("feedsync")


def _with_conn(command: Command) -> Callable[[argparse.Namespace, logging.Logger], int]:
    def run(args: argparse.Namespace, logger: logging.Logger) -> int:
        try:
            config = load_config(args.config)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
        conn = connect_db(config.paths.state_db)
        try:
            return command(args, config, conn, logger)
        finally:
            conn.close()

    return run


def _cmd_db_migrate(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    log_event(logger, logging.INFO, "db_migrated", backend=conn.backend)
    return 0


def _cmd_db_copy(args: argparse.Namespace, logger: logging.Logger) -> int:
    pg_url = args.pg_url or get_db_url()
    if not pg_url:
        log_event(logger, logging.ERROR, "copy_failed", error="FS_DB_URL or --pg-url is required")
        return 1
    copied = copy_sqlite_to_postgres(args.sqlite, pg_url)
    log_event(logger, logging.INFO, "copy_complete", rows=sum(copied.values()), tables=len(copied))
    return 0


def _cmd_feeds_add(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    feed = get_or_create_feed(conn, args.url)
    log_event(logger, logging.INFO, "feed", feed_id=feed.id, url=feed.url)
    print(feed.id)
    return 0


def _cmd_subscribe(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    feed = get_feed(conn, args.feed)
    if feed is None:
        if not args.feed.startswith(("http://", "https://")):
            log_event(logger, logging.ERROR, "feed_not_found", feed=args.feed)
            return 1
        feed = get_or_create_feed(conn, args.feed)
    subscription = subscribe_user(conn, args.user, feed.id)
    log_event(
        logger,
        logging.INFO,
        "subscription",
        subscription_id=subscription.id,
        user_id=args.user,
        feed_id=feed.id,
    )
    return 0


def _cmd_unsubscribe(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    if not unsubscribe_user(conn, args.user, args.feed_id):
        log_event(logger, logging.WARNING, "subscription_not_found", user_id=args.user, feed_id=args.feed_id)
        return 1
    return 0


def _cmd_jobs_list(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    enabled = None if args.all else True
    for job in list_jobs(conn, enabled=enabled, job_type=args.job_type, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            enabled=job.enabled,
            next_run_at=job.next_run_at,
            running_since=job.running_since,
            failures=job.consecutive_failures,
            error=job.last_error,
        )
    return 0


def _cmd_websub_renew(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    result = renew_expiring_subscriptions(conn, config, args.hours or config.websub.renew_before_hours)
    for error in result.errors:
        log_event(logger, logging.WARNING, "websub_renewal_error", error=error)
    return 0 if result.failed == 0 else 2


def _cmd_websub_list(args: argparse.Namespace, config: Config, conn: Any, logger: logging.Logger) -> int:
    for subscription in list_push_subscriptions(conn, state=args.state):
        log_event(
            logger,
            logging.INFO,
            "push_subscription",
            feed_id=subscription.feed_id,
            hub_url=subscription.hub_url,
            state=subscription.state,
            expires_at=subscription.expires_at,
            error=subscription.last_error,
        )
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    from .api import create_app

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    uvicorn.run(create_app(config), host=args.host, port=args.port, proxy_headers=True)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedsync", description="feedsync CLI")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to config.yml (defaults to FS_CONFIG_PATH)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_with_conn(_cmd_db_migrate))
    db_copy = db_subparsers.add_parser("copy-to-postgres", help="Copy a SQLite store into PostgreSQL")
    db_copy.add_argument("--sqlite", required=True, help="Path to the SQLite state file")
    db_copy.add_argument("--pg-url", default=None, help="Target URL (defaults to FS_DB_URL)")
    db_copy.set_defaults(func=_cmd_db_copy)

    feeds_parser = subparsers.add_parser("feeds", help="Feed commands")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)
    feeds_add = feeds_subparsers.add_parser("add", help="Register a feed URL")
    feeds_add.add_argument("url")
    feeds_add.set_defaults(func=_with_conn(_cmd_feeds_add))

    subscribe = subparsers.add_parser("subscribe", help="Subscribe a user to a feed id or URL")
    subscribe.add_argument("--user", required=True)
    subscribe.add_argument("feed")
    subscribe.set_defaults(func=_with_conn(_cmd_subscribe))

    unsubscribe = subparsers.add_parser("unsubscribe", help="Unsubscribe a user from a feed")
    unsubscribe.add_argument("--user", required=True)
    unsubscribe.add_argument("feed_id")
    unsubscribe.set_defaults(func=_with_conn(_cmd_unsubscribe))

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_subparsers.add_parser("list", help="List scheduled jobs")
    jobs_list.add_argument("--job-type", default=None)
    jobs_list.add_argument("--all", action="store_true", help="Include disabled jobs")
    jobs_list.add_argument("--limit", type=int, default=100)
    jobs_list.set_defaults(func=_with_conn(_cmd_jobs_list))

    websub_parser = subparsers.add_parser("websub", help="Push subscription commands")
    websub_subparsers = websub_parser.add_subparsers(dest="websub_command", required=True)
    websub_renew = websub_subparsers.add_parser("renew", help="Renew expiring hub subscriptions")
    websub_renew.add_argument("--hours", type=int, default=None)
    websub_renew.set_defaults(func=_with_conn(_cmd_websub_renew))
    websub_list = websub_subparsers.add_parser("list", help="List hub subscriptions")
    websub_list.add_argument("--state", choices=["pending", "active", "unsubscribed"], default=None)
    websub_list.set_defaults(func=_with_conn(_cmd_websub_list))

    serve = subparsers.add_parser("serve", help="Run the HTTP app")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.set_defaults(func=_cmd_serve)
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())

import logging

from feedsync.cli import build_parser
from feedsync.db import connect_db
from feedsync.storage import count_active_subscriptions, get_feed_by_url, list_jobs


def _run(argv):
    args = build_parser().parse_args(argv)
    return args.func(args, logging.getLogger("feedsync.test"))


def test_subscribe_and_unsubscribe_by_url(db_path, monkeypatch, capsys):
    monkeypatch.setenv("FS_DB_PATH", db_path)
    url = "https://blog.example.org/feed.xml"

    assert _run(["db", "migrate"]) == 0
    assert _run(["feeds", "add", url]) == 0
    feed_id = capsys.readouterr().out.strip().splitlines()[-1]
    assert _run(["subscribe", "--user", "user-1", url]) == 0
    assert _run(["subscribe", "--user", "user-2", feed_id]) == 0

    conn = connect_db(db_path)
    try:
        assert get_feed_by_url(conn, url).id == feed_id
        assert count_active_subscriptions(conn, feed_id) == 2
        assert len(list_jobs(conn)) == 1
    finally:
        conn.close()

    assert _run(["unsubscribe", "--user", "user-1", feed_id]) == 0
    assert _run(["unsubscribe", "--user", "user-1", feed_id]) == 1
    assert _run(["jobs", "list", "--all"]) == 0
    assert _run(["websub", "list", "--state", "active"]) == 0


def test_subscribe_rejects_unknown_feed_id(db_path, monkeypatch):
    monkeypatch.setenv("FS_DB_PATH", db_path)
    assert _run(["subscribe", "--user", "user-1", "not-a-feed"]) == 1


def test_invalid_config_exits_nonzero(tmp_path, monkeypatch):
    path = tmp_path / "config.yml"
    path.write_text("app:\n  environment: staging\n", encoding="utf-8")
    assert _run(["--config", str(path), "jobs", "list"]) == 1

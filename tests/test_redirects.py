from feedsync.redirects import handle_permanent_redirect, migrate_subscriptions_to_existing_feed
from feedsync.storage import (
    count_active_subscriptions,
    create_feed,
    find_user_subscription,
    get_feed,
    get_feed_job,
    insert_entry,
    list_subscriptions_for_user,
    list_visible_entries,
    set_user_entry_state,
    subscribe_user,
    unsubscribe_user,
)

OLD_URL = "https://old.example.com/feed.xml"
NEW_URL = "https://new.example.com/feed.xml"


def test_redirect_to_unknown_url_updates_feed_in_place(conn):
    feed = create_feed(conn, OLD_URL)
    subscribe_user(conn, "user-1", feed.id)

    outcome = handle_permanent_redirect(conn, feed, NEW_URL)

    assert outcome.merged_into is None
    assert get_feed(conn, feed.id).url == NEW_URL
    assert find_user_subscription(conn, "user-1", feed.id).active is True


def test_redirect_to_same_url_is_a_no_op(conn):
    feed = create_feed(conn, OLD_URL)
    outcome = handle_permanent_redirect(conn, feed, OLD_URL)
    assert outcome.merged_into is None
    assert outcome.migration is None


def test_redirect_to_known_feed_moves_subscribers(conn):
    old = create_feed(conn, OLD_URL)
    new = create_feed(conn, NEW_URL)
    subscribe_user(conn, "user-1", old.id)

    outcome = handle_permanent_redirect(conn, old, NEW_URL)

    assert outcome.merged_into == new.id
    assert outcome.migration.migrated == 1
    assert outcome.migration.created == 1
    assert get_feed(conn, old.id).url == OLD_URL

    moved = find_user_subscription(conn, "user-1", new.id)
    assert moved.active is True
    assert moved.previous_feed_ids == [old.id]
    ended = find_user_subscription(conn, "user-1", old.id)
    assert ended.active is False
    assert ended.unsubscribed_at is not None

    assert get_feed_job(conn, new.id).enabled is True
    assert get_feed_job(conn, old.id).enabled is False


def test_user_subscribed_to_both_ends_with_one_active_subscription(conn):
    old = create_feed(conn, OLD_URL)
    new = create_feed(conn, NEW_URL)
    subscribe_user(conn, "user-1", old.id)
    existing = subscribe_user(conn, "user-1", new.id)

    result = migrate_subscriptions_to_existing_feed(conn, old.id, new.id)

    assert (result.migrated, result.created, result.reactivated) == (1, 0, 0)
    active = list_subscriptions_for_user(conn, "user-1")
    assert [sub.id for sub in active] == [existing.id]
    assert active[0].previous_feed_ids == [old.id]
    assert count_active_subscriptions(conn, new.id) == 1


def test_ended_subscription_on_new_feed_is_reactivated(conn):
    old = create_feed(conn, OLD_URL)
    new = create_feed(conn, NEW_URL)
    previous = subscribe_user(conn, "user-1", new.id)
    unsubscribe_user(conn, "user-1", new.id)
    subscribe_user(conn, "user-1", old.id)

    result = migrate_subscriptions_to_existing_feed(conn, old.id, new.id)

    assert result.reactivated == 1
    current = find_user_subscription(conn, "user-1", new.id)
    assert current.id == previous.id
    assert current.active is True
    assert current.previous_feed_ids == [old.id]
    assert count_active_subscriptions(conn, old.id) == 0


def test_migration_keeps_entry_state_visible(conn):
    old = create_feed(conn, OLD_URL)
    new = create_feed(conn, NEW_URL)
    subscribe_user(conn, "user-1", old.id)
    read_entry = insert_entry(conn, old.id, "guid-1", title="Read me")
    starred_entry = insert_entry(conn, old.id, "guid-2", title="Star me")
    set_user_entry_state(conn, "user-1", read_entry, read=True)
    set_user_entry_state(conn, "user-1", starred_entry, starred=True)
    insert_entry(conn, new.id, "guid-3", title="Fresh")

    migrate_subscriptions_to_existing_feed(conn, old.id, new.id)

    entries = {entry["guid"]: entry for entry in list_visible_entries(conn, "user-1")}
    assert set(entries) == {"guid-1", "guid-2", "guid-3"}
    assert entries["guid-1"]["read"] is True
    assert entries["guid-1"]["starred"] is False
    assert entries["guid-2"]["starred"] is True
    assert entries["guid-3"]["read"] is False


def test_migration_without_subscribers_only_syncs_jobs(conn):
    old = create_feed(conn, OLD_URL)
    new = create_feed(conn, NEW_URL)
    result = migrate_subscriptions_to_existing_feed(conn, old.id, new.id)
    assert result.migrated == 0
    assert get_feed_job(conn, new.id) is None
    assert migrate_subscriptions_to_existing_feed(conn, new.id, new.id).migrated == 0

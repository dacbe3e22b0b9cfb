import base64

import pytest

from feedsync.security.secrets import (
    SecretError,
    has_master_key,
    load_secret_box,
    open_callback_secret,
    seal_callback_secret,
)


def _set_master_env(monkeypatch, key_id="v1"):
    key = base64.urlsafe_b64encode(b"a" * 32).decode("utf-8")
    monkeypatch.setenv("FS_MASTER_KEY", key)
    monkeypatch.setenv("FS_KEY_ID", key_id)


def test_seal_open_roundtrip(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = seal_callback_secret("supersecret", "feed-1")
    assert key_id == "v1"
    assert blob != "supersecret"
    assert open_callback_secret(blob, key_id, "feed-1") == "supersecret"


def test_sealed_secret_is_bound_to_feed(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = seal_callback_secret("supersecret", "feed-1")
    with pytest.raises(SecretError):
        open_callback_secret(blob, key_id, "feed-2")


def test_unknown_key_id_is_rejected(monkeypatch):
    _set_master_env(monkeypatch)
    key_id, blob = seal_callback_secret("supersecret", "feed-1")
    monkeypatch.setenv("FS_KEY_ID", "v2")
    with pytest.raises(SecretError, match="unknown key id"):
        open_callback_secret(blob, key_id, "feed-1")


def test_plain_storage_without_master_key():
    assert has_master_key() is False
    assert seal_callback_secret("plain", "feed-1") == (None, "plain")
    assert open_callback_secret("plain", None, "feed-1") == "plain"


def test_invalid_master_key(monkeypatch):
    monkeypatch.setenv("FS_MASTER_KEY", base64.urlsafe_b64encode(b"short").decode("utf-8"))
    with pytest.raises(SecretError, match="32 bytes"):
        load_secret_box()


def test_corrupt_sealed_blob_is_a_secret_error(monkeypatch):
    _set_master_env(monkeypatch)
    with pytest.raises(SecretError, match="base64url"):
        open_callback_secret("abcde", "v1", "feed-1")
    with pytest.raises(SecretError, match="truncated"):
        open_callback_secret("@@@@", "v1", "feed-1")

from __future__ import annotations

import base64
import binascii
import os
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

MASTER_KEY_ENV = "FS_MASTER_KEY"
KEY_ID_ENV = "FS_KEY_ID"

DEFAULT_KEY_ID = "v1"
HKDF_INFO = b"feedsync:websub-secrets:v1"
NONCE_BYTES = 12


class SecretError(ValueError):
    pass


@dataclass(frozen=True)
class SecretBox:
    key_id: str
    aesgcm: AESGCM


def has_master_key() -> bool:
    return bool(os.environ.get(MASTER_KEY_ENV, "").strip())


def load_secret_box() -> SecretBox:
    master_b64 = os.environ.get(MASTER_KEY_ENV, "").strip()
    if not master_b64:
        raise SecretError(f"Master key is not set. Set {MASTER_KEY_ENV}.")
    try:
        master = base64.urlsafe_b64decode(_pad_b64(master_b64))
    except (binascii.Error, ValueError) as exc:
        raise SecretError("Master key is not valid base64url") from exc
    if len(master) != 32:
        raise SecretError("Master key must be 32 bytes (base64url encoded)")

    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=HKDF_INFO)
    return SecretBox(
        key_id=os.environ.get(KEY_ID_ENV) or DEFAULT_KEY_ID,
        aesgcm=AESGCM(hkdf.derive(master)),
    )


def seal_callback_secret(secret: str, feed_id: str) -> tuple[str | None, str]:
    """Return ``(key_id, stored_value)``; key_id is None when stored in plain."""
    if not has_master_key():
        return None, secret
    box = load_secret_box()
    nonce = os.urandom(NONCE_BYTES)
    ciphertext = box.aesgcm.encrypt(nonce, secret.encode("utf-8"), _aad(feed_id))
    return box.key_id, base64.urlsafe_b64encode(nonce + ciphertext).decode("ascii")


def open_callback_secret(stored: str, key_id: str | None, feed_id: str) -> str:
    if key_id is None:
        return stored
    box = load_secret_box()
    if box.key_id != key_id:
        raise SecretError(f"Secret sealed under unknown key id {key_id}")
    try:
        data = base64.urlsafe_b64decode(_pad_b64(stored))
    except (binascii.Error, ValueError) as exc:
        raise SecretError("Sealed secret is not valid base64url") from exc
    if len(data) <= NONCE_BYTES:
        raise SecretError("Sealed secret is truncated")
    try:
        plaintext = box.aesgcm.decrypt(data[:NONCE_BYTES], data[NONCE_BYTES:], _aad(feed_id))
    except InvalidTag as exc:
        raise SecretError("Sealed secret failed authentication") from exc
    return plaintext.decode("utf-8")


def _aad(feed_id: str) -> bytes:
    return f"websub:{feed_id}".encode("utf-8")


def _pad_b64(value: str) -> str:
    return value + "=" * (-len(value) % 4)

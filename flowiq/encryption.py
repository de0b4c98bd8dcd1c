"""Fernet helpers for data stored at rest.

Two things are encrypted: EHR API credentials persisted in the database and
uploaded insurance card images written to the object store.  The key comes
from ``FLOWIQ_ENCRYPTION_KEY`` or, for local development, from a key file
generated on first use inside the data directory.
"""

from __future__ import annotations

import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken

from flowiq.config import get_settings

logger = logging.getLogger(__name__)

_KEY_FILENAME = "fernet.key"


def _ensure_key() -> bytes:
    """Return a stable key, creating a local key file if required."""

    settings = get_settings()
    if settings.encryption_key:
        return settings.encryption_key.encode("utf-8")

    key_path = settings.data_dir / _KEY_FILENAME
    if key_path.exists():
        return key_path.read_bytes().strip()

    key_path.parent.mkdir(parents=True, exist_ok=True)
    generated = Fernet.generate_key()
    key_path.write_bytes(generated)
    try:
        key_path.chmod(0o600)
    except OSError:  # pragma: no cover - platform dependent
        logger.warning("encryption_key_chmod_failed", extra={"path": str(key_path)})
    return generated


@lru_cache(maxsize=1)
def _cipher() -> Fernet:
    return Fernet(_ensure_key())


def encrypt_bytes(data: bytes) -> bytes:
    """Encrypt *data* for storage on disk."""

    if not isinstance(data, (bytes, bytearray)):
        raise TypeError("payload must be bytes-like")
    return _cipher().encrypt(bytes(data))


def decrypt_bytes(blob: bytes) -> bytes:
    """Decrypt previously stored *blob*."""

    if not isinstance(blob, (bytes, bytearray)):
        raise TypeError("ciphertext must be bytes-like")
    try:
        return _cipher().decrypt(bytes(blob))
    except InvalidToken as exc:
        raise ValueError("Ciphertext could not be decrypted") from exc


def encrypt_secret(value: str) -> str:
    return _cipher().encrypt(value.encode("utf-8")).decode("ascii")


def decrypt_secret(token: str) -> str:
    try:
        return _cipher().decrypt(token.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise ValueError("Stored secret could not be decrypted") from exc


def reset_cipher_cache() -> None:
    _cipher.cache_clear()


__all__ = [
    "decrypt_bytes",
    "decrypt_secret",
    "encrypt_bytes",
    "encrypt_secret",
    "reset_cipher_cache",
]

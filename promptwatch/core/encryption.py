"""Provider credentials at rest.

FERNET_KEY may hold several comma-separated keys to allow rotation: the first
key encrypts, every key is tried for decryption.
"""

import logging
from functools import lru_cache

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from promptwatch.core.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def _cipher(keys: str) -> MultiFernet:
    parts = [k.strip() for k in keys.split(",") if k.strip()]
    if not parts:
        raise ValueError("FERNET_KEY is not configured, provider credentials cannot be stored or read")
    return MultiFernet([Fernet(k.encode()) for k in parts])


def encrypt_value(plaintext: str) -> bytes:
    """Token for a LargeBinary column."""
    return _cipher(settings.fernet_key).encrypt(plaintext.encode("utf-8"))


def decrypt_value(ciphertext: bytes | None) -> str:
    """Plaintext credential, or "" when missing or unreadable.

    An empty credential is not an error here: the provider call fails with
    ``auth`` and that failure lands on the execution record.
    """
    if not ciphertext:
        return ""
    try:
        return _cipher(settings.fernet_key).decrypt(ciphertext).decode("utf-8")
    except InvalidToken:
        logger.error("Provider credential could not be decrypted with any configured FERNET_KEY")
        return ""


def rotate_value(ciphertext: bytes) -> bytes:
    """Re-encrypt a stored token under the current primary key."""
    return _cipher(settings.fernet_key).rotate(ciphertext)

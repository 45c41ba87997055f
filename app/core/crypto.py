"""Symmetric encryption of message bodies."""

from __future__ import annotations

import hashlib
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.config import get_settings
from app.core.errors import DecryptionError

NONCE_SIZE = 12


class MessageCipher:
    """AES-256-GCM cipher bound to the process-wide message key.

    The configured key is an opaque string; the AES key is its SHA-256 digest.
    Every message carries its own random nonce, so messages decrypt
    independently of each other.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Message encryption key must not be empty")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    @staticmethod
    def new_nonce() -> bytes:
        return os.urandom(NONCE_SIZE)

    def encrypt(self, plaintext: str, nonce: bytes) -> bytes:
        if len(nonce) != NONCE_SIZE:
            raise ValueError(f"Nonce must be {NONCE_SIZE} bytes")
        return self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)

    def decrypt(self, ciphertext: bytes, nonce: bytes) -> str:
        try:
            raw = self._aead.decrypt(nonce, ciphertext, None)
            return raw.decode("utf-8")
        except (InvalidTag, ValueError) as exc:
            raise DecryptionError() from exc


@lru_cache(maxsize=1)
def get_cipher() -> MessageCipher:
    """Return the cipher built from the configured key."""

    return MessageCipher(get_settings().message_encryption_key)

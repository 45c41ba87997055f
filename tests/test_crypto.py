from __future__ import annotations

import pytest

from app.core.crypto import NONCE_SIZE, MessageCipher
from app.core.errors import DecryptionError


@pytest.mark.parametrize("plaintext", ["hello", "", "Grüße aus Köln", "line\nbreak " * 50])
def test_decrypt_returns_original_plaintext(plaintext):
    cipher = MessageCipher("secret")
    nonce = cipher.new_nonce()

    assert cipher.decrypt(cipher.encrypt(plaintext, nonce), nonce) == plaintext


def test_each_message_gets_its_own_nonce():
    cipher = MessageCipher("secret")
    nonces = {cipher.new_nonce() for _ in range(100)}

    assert len(nonces) == 100
    assert all(len(nonce) == NONCE_SIZE for nonce in nonces)


def test_same_plaintext_with_different_nonces_differs():
    cipher = MessageCipher("secret")

    assert cipher.encrypt("hello", cipher.new_nonce()) != cipher.encrypt("hello", cipher.new_nonce())


def test_decrypt_with_another_key_fails():
    nonce = MessageCipher.new_nonce()
    ciphertext = MessageCipher("secret").encrypt("hello", nonce)

    with pytest.raises(DecryptionError):
        MessageCipher("other-secret").decrypt(ciphertext, nonce)


def test_tampered_ciphertext_fails():
    cipher = MessageCipher("secret")
    nonce = cipher.new_nonce()
    ciphertext = bytearray(cipher.encrypt("hello", nonce))
    ciphertext[0] ^= 0xFF

    with pytest.raises(DecryptionError):
        cipher.decrypt(bytes(ciphertext), nonce)


def test_wrong_nonce_length_is_rejected():
    cipher = MessageCipher("secret")

    with pytest.raises(ValueError):
        cipher.encrypt("hello", b"short")
    with pytest.raises(DecryptionError):
        cipher.decrypt(b"irrelevant", b"short")


def test_empty_key_is_rejected():
    with pytest.raises(ValueError):
        MessageCipher("")

from __future__ import annotations

from datetime import timedelta

import jwt
import pytest

from app.config import get_settings
from app.core.errors import AuthenticationError
from app.core.security import (
    create_access_token,
    decode_access_token,
    get_password_hash,
    new_session_id,
    verify_password,
)


def test_password_hash_round_trip():
    hashed = get_password_hash("password123")

    assert hashed != "password123"
    assert verify_password("password123", hashed)
    assert not verify_password("password124", hashed)


def test_access_token_carries_user_and_session():
    session_id = new_session_id()
    token = create_access_token({"sub": "42", "sid": session_id})

    claims = decode_access_token(token)

    assert claims.user_id == 42
    assert claims.session_id == session_id


def test_expired_token_is_rejected():
    token = create_access_token({"sub": "1", "sid": "abc"}, expires_delta=timedelta(seconds=-1))

    with pytest.raises(AuthenticationError, match="expired"):
        decode_access_token(token)


@pytest.mark.parametrize(
    "claims",
    [{"sub": "1"}, {"sid": "abc"}, {"sub": "not-a-number", "sid": "abc"}],
)
def test_token_without_identity_is_rejected(claims):
    with pytest.raises(AuthenticationError, match="Could not validate credentials"):
        decode_access_token(create_access_token(claims))


def test_token_signed_with_another_secret_is_rejected():
    settings = get_settings()
    token = jwt.encode({"sub": "1", "sid": "abc"}, "another-secret", algorithm=settings.jwt_algorithm)

    with pytest.raises(AuthenticationError):
        decode_access_token(token)

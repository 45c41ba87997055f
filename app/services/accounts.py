"""Registration, login and session resolution."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.config import get_settings
from app.core.errors import AuthenticationError, ConflictError
from app.core.security import (
    create_access_token,
    decode_access_token,
    get_password_hash,
    new_session_id,
    verify_password,
)
from app.database import atomic
from app.models import User, UserRole
from app.schemas import Token, UserCreate, UserRead
from app.services.human import HumanVerifier
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror

logger = logging.getLogger(__name__)


async def register(
    db: AsyncSession,
    payload: UserCreate,
    verifier: HumanVerifier,
) -> UserRead:
    """Create an account; usernames listed in ``admin_usernames`` become admins."""

    await verifier.verify(payload.captcha_token)
    settings = get_settings()
    role = UserRole.ADMIN if payload.username in settings.admin_usernames else UserRole.USER

    async with atomic(db):
        existing = await db.scalar(
            select(User.id).where(or_(User.username == payload.username, User.email == payload.email))
        )
        if existing is not None:
            raise ConflictError("Username or email is already taken")
        user = User(
            username=payload.username,
            email=payload.email,
            name=payload.name,
            hashed_password=get_password_hash(payload.password),
            role=role,
        )
        db.add(user)
        await db.flush()

    logger.info("User registered", extra={"user_id": user.id, "role": role.value})
    return UserRead.model_validate(user)


async def authenticate(db: AsyncSession, username: str, password: str) -> User:
    user = await db.scalar(select(User).where(User.username == username))
    if user is None or not verify_password(password, user.hashed_password):
        raise AuthenticationError("Incorrect username or password")
    return user


def open_session(runtime: ChatRuntime, user: User) -> Token:
    """Issue an access token bound to a fresh session mirror."""

    settings = get_settings()
    mirror = runtime.sessions.put(SessionMirror.from_user(new_session_id(), user))
    access_token = create_access_token(
        {"sub": str(user.id), "sid": mirror.session_id},
        expires_delta=timedelta(minutes=settings.access_token_expire_minutes),
    )
    logger.info("Session opened", extra={"user_id": user.id})
    return Token(access_token=access_token, user=UserRead.model_validate(user))


async def login(db: AsyncSession, runtime: ChatRuntime, username: str, password: str) -> Token:
    user = await authenticate(db, username, password)
    return open_session(runtime, user)


async def resolve_session(db: AsyncSession, runtime: ChatRuntime, token: str) -> SessionMirror:
    """Map a bearer token to its live session mirror.

    Mirrors are process-local; a valid token presented to a process that has
    not seen its session yet gets a mirror rebuilt from the store.
    """

    claims = decode_access_token(token)
    if runtime.sessions.is_ended(claims.session_id):
        raise AuthenticationError("Session has ended")
    mirror = runtime.sessions.get(claims.session_id)
    if mirror is not None and mirror.user_id == claims.user_id:
        return mirror
    user = await db.get(User, claims.user_id)
    if user is None:
        raise AuthenticationError("Could not validate credentials")
    return runtime.sessions.put(SessionMirror.from_user(claims.session_id, user))

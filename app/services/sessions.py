"""Process-local mirrors of authenticated sessions."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Dict, Set

from app.config import get_settings
from app.models import User, UserRole

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SessionMirror:
    """Copy of the authenticated user held for the lifetime of one session.

    ``channel_id`` must be refreshed whenever a membership transition changes
    the user's channel; :class:`SessionRegistry` does that for every session
    of the user.
    """

    session_id: str
    user_id: int
    username: str
    role: UserRole
    channel_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN

    @classmethod
    def from_user(cls, session_id: str, user: User) -> "SessionMirror":
        return cls(
            session_id=session_id,
            user_id=user.id,
            username=user.username,
            role=UserRole(user.role),
            channel_id=user.channel_id,
        )


class SessionRegistry:
    """Index of live session mirrors by session id and by user.

    Ended session ids are remembered only for ``ended_ttl_seconds``, the
    lifetime of an access token; past that the token itself is rejected as
    expired.
    """

    def __init__(
        self,
        *,
        ended_ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ended_ttl_seconds is None:
            ended_ttl_seconds = get_settings().access_token_expire_minutes * 60
        self._sessions: Dict[str, SessionMirror] = {}
        self._by_user: Dict[int, Set[str]] = defaultdict(set)
        self._ended: Dict[str, float] = {}
        self._ended_ttl = ended_ttl_seconds
        self._clock = clock

    def get(self, session_id: str) -> SessionMirror | None:
        return self._sessions.get(session_id)

    def put(self, mirror: SessionMirror) -> SessionMirror:
        self._sessions[mirror.session_id] = mirror
        self._by_user[mirror.user_id].add(mirror.session_id)
        return mirror

    def for_user(self, user_id: int) -> list[SessionMirror]:
        return [self._sessions[sid] for sid in self._by_user.get(user_id, ()) if sid in self._sessions]

    def refresh_channel(self, user_id: int, channel_id: int | None) -> int:
        mirrors = self.for_user(user_id)
        for mirror in mirrors:
            mirror.channel_id = channel_id
        return len(mirrors)

    def __len__(self) -> int:
        return len(self._sessions)

    @property
    def ended_count(self) -> int:
        return len(self._ended)

    def is_ended(self, session_id: str) -> bool:
        deadline = self._ended.get(session_id)
        if deadline is None:
            return False
        if deadline <= self._clock():
            del self._ended[session_id]
            return False
        return True

    def _mark_ended(self, session_ids: Set[str]) -> None:
        now = self._clock()
        # Insertion order is deadline order, so expired ids sit at the front.
        while self._ended:
            oldest = next(iter(self._ended))
            if self._ended[oldest] > now:
                break
            del self._ended[oldest]
        for session_id in session_ids:
            self._ended.pop(session_id, None)
            self._ended[session_id] = now + self._ended_ttl

    def destroy(self, session_id: str) -> None:
        self._mark_ended({session_id})
        mirror = self._sessions.pop(session_id, None)
        if mirror is None:
            return
        sessions = self._by_user.get(mirror.user_id)
        if sessions is not None:
            sessions.discard(session_id)
            if not sessions:
                self._by_user.pop(mirror.user_id, None)

    def destroy_user(self, user_id: int) -> int:
        session_ids = self._by_user.pop(user_id, set())
        self._mark_ended(session_ids)
        for session_id in session_ids:
            self._sessions.pop(session_id, None)
        if session_ids:
            logger.info("Destroyed user sessions", extra={"user_id": user_id, "sessions": len(session_ids)})
        return len(session_ids)


session_registry = SessionRegistry()
"""Singleton registry for session mirrors of this process."""

"""Long-lived collaborators shared by every chat operation of this process."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.crypto import MessageCipher, get_cipher
from app.services.cache import ChannelCache, get_cache
from app.services.effects import SideEffects, apply_effects
from app.services.sessions import SessionRegistry, session_registry
from huddle.realtime import EventBus, get_event_bus


@dataclass(slots=True)
class ChatRuntime:
    """Cache, event bus, session mirrors and cipher used by the services."""

    cache: ChannelCache
    bus: EventBus
    sessions: SessionRegistry
    cipher: MessageCipher

    async def apply(self, db: AsyncSession, effects: SideEffects) -> None:
        await apply_effects(self, db, effects)


@lru_cache(maxsize=1)
def get_runtime() -> ChatRuntime:
    return ChatRuntime(
        cache=get_cache(),
        bus=get_event_bus(),
        sessions=session_registry,
        cipher=get_cipher(),
    )

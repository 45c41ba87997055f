"""Post-commit side effects of a mutation and the single place they are applied."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models import User
from app.schemas import NotificationPayload, UserRead
from huddle.realtime import Event, Topic

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from app.services.runtime import ChatRuntime

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SideEffects:
    """Everything a committed mutation must propagate outside the store.

    ``channel_ids`` changed membership, ``message_channel_ids`` changed their
    message sequence, ``removed_channel_ids`` were deleted, ``current_channels``
    maps user ids to their new channel, ``ended_users`` lose every session.
    """

    channel_ids: set[int] = field(default_factory=set)
    message_channel_ids: set[int] = field(default_factory=set)
    removed_channel_ids: set[int] = field(default_factory=set)
    current_channels: dict[int, int | None] = field(default_factory=dict)
    ended_users: set[int] = field(default_factory=set)
    events: list[Event] = field(default_factory=list)

    def notify(self, channel_id: int, text: str) -> None:
        self.events.append(
            Event(Topic.NOTIFICATION, channel_id, NotificationPayload(message=text).model_dump())
        )

    def publish(self, topic: Topic, channel_id: int, payload: dict[str, Any]) -> None:
        self.events.append(Event(topic, channel_id, payload))


def user_payload(user: User) -> dict[str, Any]:
    return UserRead.model_validate(user).model_dump(mode="json")


async def apply_effects(runtime: "ChatRuntime", db: AsyncSession, effects: SideEffects) -> None:
    """Propagate ``effects`` in order: session mirrors, cache, then events.

    Must only be called after the mutation's transaction committed. Failures
    past this point are logged by the cache and the bus and never undo the
    committed mutation.
    """

    for user_id, channel_id in effects.current_channels.items():
        runtime.sessions.refresh_channel(user_id, channel_id)
    for user_id in effects.ended_users:
        runtime.sessions.destroy_user(user_id)

    await runtime.cache.refresh(
        db,
        channel_ids=effects.channel_ids,
        message_channel_ids=effects.message_channel_ids,
        removed_channel_ids=effects.removed_channel_ids,
        current_channels=effects.current_channels,
    )

    for event in effects.events:
        await runtime.bus.publish(event)
    if effects.events:
        logger.debug("Published channel events", extra={"count": len(effects.events)})

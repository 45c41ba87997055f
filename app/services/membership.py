"""One-channel-per-user membership transitions.

A user is either unjoined (``channel_id is None``) or joined to exactly one
channel. The state lives in three places: the store (``users.channel_id`` plus
the ``channel_members`` row), the cache snapshots, and the session mirrors.
Each transition is computed inside one store transaction and returns the new
state together with the side effects that bring the cache and the mirrors in
line; those effects are applied right after commit, before the operation
reports success.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, NotFoundError, ValidationError
from app.database import atomic
from app.models import Channel, ChannelMember, Message, User
from app.monitoring.metrics import membership_transitions_total
from app.schemas import ChannelRead
from app.services.effects import SideEffects, user_payload
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror
from huddle.realtime import Topic

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Transition:
    """Canonical membership state after a committed transition plus its effects."""

    user_id: int
    channel_id: int | None
    effects: SideEffects


async def load_user(db: AsyncSession, user_id: int) -> User:
    user = await db.get(User, user_id, populate_existing=True)
    if user is None:
        raise NotFoundError("User does not exist")
    return user


async def is_member(db: AsyncSession, channel_id: int, user_id: int) -> bool:
    row = await db.scalar(
        select(ChannelMember.user_id).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id == user_id,
        )
    )
    return row is not None


async def _join(db: AsyncSession, user_id: int, channel_id: int) -> Transition:
    user = await load_user(db, user_id)
    if user.channel_id is not None:
        raise ValidationError("One channel at a time")
    if await db.get(Channel, channel_id) is None:
        raise NotFoundError("Channel does not exist")
    if await is_member(db, channel_id, user_id):
        raise ValidationError("Already joined")

    db.add(ChannelMember(channel_id=channel_id, user_id=user_id))
    user.channel_id = channel_id
    await db.flush()

    effects = SideEffects(channel_ids={channel_id}, current_channels={user_id: channel_id})
    effects.notify(channel_id, f"{user.username} has joined")
    effects.publish(Topic.JOINED, channel_id, user_payload(user))
    return Transition(user_id=user_id, channel_id=channel_id, effects=effects)


async def _leave(db: AsyncSession, user_id: int, channel_id: int) -> Transition:
    user = await load_user(db, user_id)
    if user.channel_id is None:
        raise ValidationError("Join first")
    if await db.get(Channel, channel_id) is None:
        raise NotFoundError("Channel does not exist")
    if not await is_member(db, channel_id, user_id):
        raise ValidationError("Already left")

    await db.execute(
        delete(ChannelMember).where(
            ChannelMember.channel_id == channel_id,
            ChannelMember.user_id == user_id,
        )
    )
    user.channel_id = None
    await db.flush()

    effects = SideEffects(channel_ids={channel_id}, current_channels={user_id: None})
    effects.notify(channel_id, f"{user.username} has left")
    effects.publish(Topic.LEFT, channel_id, user_payload(user))
    return Transition(user_id=user_id, channel_id=None, effects=effects)


async def join(db: AsyncSession, runtime: ChatRuntime, user_id: int, channel_id: int) -> bool:
    """Join ``channel_id``; fails while the user is joined anywhere."""

    try:
        async with atomic(db):
            transition = await _join(db, user_id, channel_id)
    except ConflictError:
        # A concurrent join won the unique membership row.
        raise ValidationError("One channel at a time") from None
    await runtime.apply(db, transition.effects)
    membership_transitions_total.labels("join").inc()
    logger.info("User joined channel", extra={"user_id": user_id, "channel_id": channel_id})
    return True


async def leave(db: AsyncSession, runtime: ChatRuntime, user_id: int, channel_id: int) -> bool:
    """Leave ``channel_id``; the user must currently be a member of it."""

    async with atomic(db):
        transition = await _leave(db, user_id, channel_id)
    await runtime.apply(db, transition.effects)
    membership_transitions_total.labels("leave").inc()
    logger.info("User left channel", extra={"user_id": user_id, "channel_id": channel_id})
    return True


async def logout(db: AsyncSession, runtime: ChatRuntime, session: SessionMirror) -> bool:
    """End ``session``, leaving the joined channel first."""

    async with atomic(db):
        user = await load_user(db, session.user_id)
        transition = None
        if user.channel_id is not None:
            transition = await _leave(db, user.id, user.channel_id)
    if transition is not None:
        await runtime.apply(db, transition.effects)
        membership_transitions_total.labels("leave").inc()
    runtime.sessions.destroy(session.session_id)
    logger.info("User logged out", extra={"user_id": session.user_id})
    return True


async def delete_account(db: AsyncSession, runtime: ChatRuntime, user_id: int) -> bool:
    """Delete the user, their channel membership and every message they posted.

    All store changes happen in one transaction; afterwards every affected
    channel is refreshed and every session of the user is destroyed.
    """

    async with atomic(db):
        user = await load_user(db, user_id)
        effects = SideEffects(current_channels={user_id: None}, ended_users={user_id})

        if user.channel_id is not None:
            transition = await _leave(db, user_id, user.channel_id)
            effects.channel_ids |= transition.effects.channel_ids
            effects.events.extend(transition.effects.events)

        authored = await db.execute(
            select(Message.id, Message.channel_id).where(Message.poster_id == user_id).order_by(Message.id)
        )
        removed_ids: list[int] = []
        for message_id, channel_id in authored.all():
            removed_ids.append(message_id)
            effects.message_channel_ids.add(channel_id)
            effects.publish(
                Topic.REMOVED_MESSAGE,
                channel_id,
                {"id": message_id, "channel_id": channel_id, "poster_id": user_id},
            )
        await db.execute(delete(Message).where(Message.poster_id == user_id))
        await db.delete(user)

    await runtime.apply(db, effects)
    membership_transitions_total.labels("delete_account").inc()
    logger.info(
        "User account deleted",
        extra={"user_id": user_id, "messages": len(removed_ids)},
    )
    return True


async def get_my_channel(db: AsyncSession, runtime: ChatRuntime, user_id: int) -> ChannelRead:
    """Return the caller's channel, resolved through the current-channel pointer."""

    channel_id = await runtime.cache.get_current_channel(db, user_id)
    if channel_id is None:
        raise ValidationError("None joined")
    channel = await runtime.cache.get_channel(db, channel_id)
    if channel is None:
        raise NotFoundError("Channel does not exist")
    return channel

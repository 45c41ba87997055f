"""Channel reads and administrator channel management."""

from __future__ import annotations

import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthorizationError, NotFoundError, ValidationError
from app.database import atomic
from app.models import Channel, ChannelMember, Message, User
from app.schemas import ChannelCreate, ChannelRead, UserRead
from app.services.effects import SideEffects, user_payload
from app.services.loaders import RequestLoaders
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror
from app.services.store import load_channel_snapshot
from huddle.realtime import Topic

logger = logging.getLogger(__name__)


def _require_admin(session: SessionMirror) -> None:
    if not session.is_admin:
        raise AuthorizationError("Administrator role required")


async def get_channels(db: AsyncSession, runtime: ChatRuntime) -> list[ChannelRead]:
    return await runtime.cache.get_channel_list(db)


async def get_single_channel(db: AsyncSession, runtime: ChatRuntime, channel_id: int) -> ChannelRead:
    channel = await runtime.cache.get_channel(db, channel_id)
    if channel is None:
        raise NotFoundError("Channel does not exist")
    return channel


async def get_channel_users(
    db: AsyncSession,
    runtime: ChatRuntime,
    loaders: RequestLoaders,
    user_id: int,
    channel_id: int,
) -> list[UserRead]:
    """Resolve the members of a channel the caller belongs to, in membership order."""

    channel = await get_single_channel(db, runtime, channel_id)
    if user_id not in channel.user_ids:
        raise ValidationError("Join first")
    members = await loaders.users.load_many(channel.user_ids)
    missing = [item for item in members if isinstance(item, NotFoundError)]
    if missing:
        logger.debug("Skipped members missing from the store", extra={"channel_id": channel_id, "count": len(missing)})
    return [item for item in members if not isinstance(item, NotFoundError)]


async def add_channel(
    db: AsyncSession,
    runtime: ChatRuntime,
    session: SessionMirror,
    payload: ChannelCreate,
) -> ChannelRead:
    """Create a channel; duplicate names surface as :class:`ConflictError`."""

    _require_admin(session)
    async with atomic(db):
        channel = Channel(name=payload.name, description=payload.description)
        db.add(channel)
        await db.flush()
        channel_id = channel.id

    await runtime.apply(db, SideEffects(channel_ids={channel_id}))
    snapshot = await load_channel_snapshot(db, channel_id)
    if snapshot is None:
        raise NotFoundError("Channel does not exist")
    logger.info("Channel created", extra={"channel_id": channel_id, "admin_id": session.user_id})
    return snapshot


async def delete_channel(
    db: AsyncSession,
    runtime: ChatRuntime,
    session: SessionMirror,
    channel_id: int,
) -> bool:
    """Delete a channel with its messages; current members become unjoined."""

    _require_admin(session)
    async with atomic(db):
        channel = await db.get(Channel, channel_id)
        if channel is None:
            raise NotFoundError("Channel does not exist")
        result = await db.execute(
            select(User).join(ChannelMember, ChannelMember.user_id == User.id).where(
                ChannelMember.channel_id == channel_id
            )
        )
        members = list(result.scalars().all())
        await db.execute(update(User).where(User.channel_id == channel_id).values(channel_id=None))
        await db.execute(delete(ChannelMember).where(ChannelMember.channel_id == channel_id))
        await db.execute(delete(Message).where(Message.channel_id == channel_id))
        await db.delete(channel)
        await db.flush()

        effects = SideEffects(
            removed_channel_ids={channel_id},
            current_channels={member.id: None for member in members},
        )
        for member in members:
            effects.publish(Topic.LEFT, channel_id, user_payload(member))
            effects.notify(channel_id, f"{member.username} has left")

    await runtime.apply(db, effects)
    logger.info(
        "Channel deleted",
        extra={"channel_id": channel_id, "admin_id": session.user_id, "members": len(members)},
    )
    return True

"""Channel API endpoints: reads, membership transitions and admin management."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_runtime, get_current_session, get_loaders
from app.core.errors import NotFoundError
from app.database import get_db
from app.schemas import ChannelCreate, ChannelRead, MessageCreate, MessageRead, UserRead
from app.services import channels, membership, messages
from app.services.loaders import RequestLoaders
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror

router = APIRouter(prefix="/channels", tags=["channels"])


@router.get("/mine", response_model=ChannelRead)
async def read_my_channel(
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> ChannelRead:
    return await membership.get_my_channel(db, runtime, session.user_id)


@router.get("", response_model=list[ChannelRead])
async def list_channels(
    _: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> list[ChannelRead]:
    return await channels.get_channels(db, runtime)


@router.post("", response_model=ChannelRead, status_code=status.HTTP_201_CREATED)
async def create_channel(
    payload: ChannelCreate,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> ChannelRead:
    return await channels.add_channel(db, runtime, session, payload)


@router.get("/{channel_id}", response_model=ChannelRead)
async def read_channel(
    channel_id: int,
    _: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> ChannelRead:
    return await channels.get_single_channel(db, runtime, channel_id)


@router.delete("/{channel_id}", response_model=bool)
async def remove_channel(
    channel_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    return await channels.delete_channel(db, runtime, session, channel_id)


@router.get("/{channel_id}/users", response_model=list[UserRead])
async def read_channel_users(
    channel_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
    loaders: RequestLoaders = Depends(get_loaders),
) -> list[UserRead]:
    return await channels.get_channel_users(db, runtime, loaders, session.user_id, channel_id)


@router.post("/{channel_id}/join", response_model=bool)
async def join_channel(
    channel_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    return await membership.join(db, runtime, session.user_id, channel_id)


@router.post("/{channel_id}/leave", response_model=bool)
async def leave_channel(
    channel_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    return await membership.leave(db, runtime, session.user_id, channel_id)


@router.post("/{channel_id}/messages", response_model=MessageRead, status_code=status.HTTP_201_CREATED)
async def create_message(
    channel_id: int,
    payload: MessageCreate,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> MessageRead:
    return await messages.post_message(db, runtime, session.user_id, channel_id, payload.content)


@router.get("/{channel_id}/messages", response_model=list[MessageRead])
async def list_messages(
    channel_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
    loaders: RequestLoaders = Depends(get_loaders),
) -> list[MessageRead]:
    """Return the channel history with each poster resolved in one batch."""

    history = await messages.get_channel_messages(db, runtime, session.user_id, channel_id)
    posters = await loaders.users.load_many(item.poster_id for item in history)
    return [
        item if isinstance(poster, NotFoundError) else item.model_copy(update={"poster": poster})
        for item, poster in zip(history, posters)
    ]

"""Single message endpoints."""

from __future__ import annotations

import asyncio

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_runtime, get_current_session, get_loaders
from app.core.errors import NotFoundError, ValidationError
from app.database import get_db
from app.schemas import MessageRead
from app.services import messages
from app.services.loaders import RequestLoaders
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror

router = APIRouter(prefix="/messages", tags=["messages"])


@router.get("/{message_id}", response_model=MessageRead)
async def read_message(
    message_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
    loaders: RequestLoaders = Depends(get_loaders),
) -> MessageRead:
    """Return one message of a channel the caller belongs to, with its poster and channel."""

    message = await loaders.messages.load(message_id)
    cached = await runtime.cache.get_channel(db, message.channel_id)
    if cached is None:
        raise NotFoundError("Channel does not exist")
    if session.user_id not in cached.user_ids:
        raise ValidationError("Join first")
    poster, channel = await asyncio.gather(
        loaders.users.load_many([message.poster_id]),
        loaders.channels.load_many([message.channel_id]),
    )
    update = {}
    if not isinstance(poster[0], NotFoundError):
        update["poster"] = poster[0]
    if not isinstance(channel[0], NotFoundError):
        update["channel"] = channel[0]
    return message.model_copy(update=update)


@router.delete("/{message_id}", response_model=bool)
async def remove_message(
    message_id: int,
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    return await messages.delete_message(
        db, runtime, session.user_id, message_id, is_admin=session.is_admin
    )

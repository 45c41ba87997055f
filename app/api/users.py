"""User directory endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_current_session, get_loaders
from app.core.errors import NotFoundError
from app.database import get_db
from app.schemas import UserDetail, UserRead
from app.services import store
from app.services.loaders import RequestLoaders
from app.services.sessions import SessionMirror

router = APIRouter(prefix="/users", tags=["users"])


@router.get("", response_model=list[UserRead])
async def list_users(
    _: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
) -> list[UserRead]:
    return await store.load_users(db)


@router.get("/{user_id}", response_model=UserDetail)
async def read_user(
    user_id: int,
    _: SessionMirror = Depends(get_current_session),
    loaders: RequestLoaders = Depends(get_loaders),
) -> UserDetail:
    """Return a user together with the channel they have joined."""

    user = await loaders.users.load(user_id)
    detail = UserDetail(**user.model_dump())
    if user.channel_id is None:
        return detail
    channel = (await loaders.channels.load_many([user.channel_id]))[0]
    if isinstance(channel, NotFoundError):
        return detail
    return detail.model_copy(update={"channel": channel})

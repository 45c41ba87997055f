"""Authentication API endpoints."""

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.deps import get_chat_runtime, get_current_session, get_verifier
from app.core.errors import NotFoundError
from app.database import get_db
from app.models import User
from app.schemas import LoginRequest, Token, UserCreate, UserRead
from app.services import accounts, membership
from app.services.human import HumanVerifier
from app.services.runtime import ChatRuntime
from app.services.sessions import SessionMirror

router = APIRouter()


@router.post("/register", response_model=UserRead, status_code=status.HTTP_201_CREATED)
async def register_user(
    user_in: UserCreate,
    db: AsyncSession = Depends(get_db),
    verifier: HumanVerifier = Depends(get_verifier),
) -> UserRead:
    """Register a new user in the system."""

    return await accounts.register(db, user_in, verifier)


@router.post("/login", response_model=Token)
async def login_user(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> Token:
    """Authenticate a user and return a JWT access token."""

    return await accounts.login(db, runtime, credentials.username, credentials.password)


@router.post("/logout", response_model=bool)
async def logout_user(
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    """Leave the joined channel and end the current session."""

    return await membership.logout(db, runtime, session)


@router.get("/me", response_model=UserRead)
async def read_current_user(
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
) -> UserRead:
    """Return the authenticated user as mirrored by the session."""

    user = await db.get(User, session.user_id)
    if user is None:
        raise NotFoundError("User does not exist")
    view = UserRead.model_validate(user)
    return view.model_copy(update={"channel_id": session.channel_id})


@router.delete("/me", response_model=bool)
async def delete_current_user(
    session: SessionMirror = Depends(get_current_session),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> bool:
    """Delete the account, its membership and every message it posted."""

    return await membership.delete_account(db, runtime, session.user_id)

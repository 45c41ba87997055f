"""FastAPI dependencies for the API layer."""

from fastapi import Depends
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import AuthenticationError
from app.database import get_db
from app.services.accounts import resolve_session
from app.services.human import HumanVerifier, get_human_verifier
from app.services.loaders import RequestLoaders
from app.services.runtime import ChatRuntime, get_runtime
from app.services.sessions import SessionMirror

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)


def get_chat_runtime() -> ChatRuntime:
    return get_runtime()


def get_verifier() -> HumanVerifier:
    return get_human_verifier()


async def get_current_session(
    token: str | None = Depends(oauth2_scheme),
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> SessionMirror:
    """Resolve the session mirror of the bearer token or fail with 401."""

    if not token:
        raise AuthenticationError()
    return await resolve_session(db, runtime, token)


def get_loaders(
    db: AsyncSession = Depends(get_db),
    runtime: ChatRuntime = Depends(get_chat_runtime),
) -> RequestLoaders:
    """Fresh loader arena for the current request."""

    return RequestLoaders(db, runtime.cipher)

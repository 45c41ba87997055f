import logging.config

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.core.errors import HuddleError
from app.database import connect_with_retry, get_engine, get_session_factory
from app.models import Base
from app.services.runtime import get_runtime
from huddle.realtime import shutdown_realtime, startup_realtime


settings = get_settings()

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": settings.log_level.upper(),
    },
    "loggers": {
        "huddle.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "app.services.cache": {
            "level": "WARNING",
        },
    },
}


logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)

app = FastAPI(title=settings.app_name, debug=settings.debug)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin) for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HuddleError)
async def handle_huddle_error(request: Request, exc: HuddleError) -> JSONResponse:
    """Translate typed chat failures into JSON error responses."""

    if exc.status_code >= 500:
        logger.warning("Request failed: %s", exc.detail, extra={"path": request.url.path, "error": exc.code})
    headers = {"WWW-Authenticate": "Bearer"} if exc.status_code == 401 else None
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "error": exc.code},
        headers=headers,
    )


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str]:
    """Simple health check endpoint."""
    return {"status": "ok", "environment": settings.environment}


@app.on_event("startup")
async def _startup() -> None:
    engine = get_engine()
    await connect_with_retry(
        engine,
        attempts=settings.database_connect_retries,
        delay_seconds=settings.database_connect_retry_delay_seconds,
    )
    if settings.database_auto_create:
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
    async with get_session_factory()() as db:
        await get_runtime().cache.warm_up(db)
    await startup_realtime()


@app.on_event("shutdown")
async def _shutdown() -> None:
    await shutdown_realtime()
    await get_runtime().cache.close()
    await get_engine().dispose()


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)

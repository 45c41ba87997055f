from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Huddle API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Root log level for the service")

    database_driver: str = Field(default="postgresql+asyncpg", env="DATABASE_DRIVER")
    database_user: str = Field(default="huddle", env="DATABASE_USER")
    database_password: str = Field(default="huddle", env="DATABASE_PASSWORD")
    database_host: str = Field(default="db", env="DATABASE_HOST")
    database_port: int = Field(default=5432, env="DATABASE_PORT")
    database_name: str = Field(default="huddle", env="DATABASE_NAME")
    database_url_override: str | None = Field(
        default=None,
        env="DATABASE_URL_OVERRIDE",
        description="Full SQLAlchemy URL; takes precedence over the individual DATABASE_* values",
    )
    database_auto_create: bool = Field(
        default=False,
        env="DATABASE_AUTO_CREATE",
        description="Create missing tables on startup instead of relying on migrations",
    )
    database_connect_retries: int = Field(
        default=20,
        env="DATABASE_CONNECT_RETRIES",
        description="Number of connection attempts made during startup",
    )
    database_connect_retry_delay_seconds: float = Field(
        default=5.0,
        env="DATABASE_CONNECT_RETRY_DELAY_SECONDS",
        description="Fixed delay between startup connection attempts",
    )

    cache_redis_url: str | None = Field(
        default=None,
        env="CACHE_REDIS_URL",
        description="Redis URL for the channel cache; an in-process cache is used when unset",
    )
    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to relay realtime events between processes",
    )
    realtime_redis_prefix: str = Field(default="huddle.realtime", env="REALTIME_REDIS_PREFIX")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")
    subscriber_queue_size: int = Field(
        default=256,
        env="SUBSCRIBER_QUEUE_SIZE",
        description="Events buffered per live subscriber before new events are dropped",
    )

    message_encryption_key: str = Field(
        default="changeme",
        env="MESSAGE_ENCRYPTION_KEY",
        description="Process-wide secret used to encrypt message bodies",
    )

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, env="ACCESS_TOKEN_EXPIRE_MINUTES")

    cors_origins: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: ["http://localhost:3000"],
        env="CORS_ORIGINS",
        description="Comma separated list of allowed CORS origins",
    )

    admin_usernames: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        env="ADMIN_USERNAMES",
        description="Usernames that receive the admin role on registration",
    )
    recaptcha_secret: str | None = Field(
        default=None,
        env="RECAPTCHA_SECRET",
        description="reCAPTCHA secret; registration requires a captcha token when set",
    )
    recaptcha_verify_url: str = Field(
        default="https://www.google.com/recaptcha/api/siteverify",
        env="RECAPTCHA_VERIFY_URL",
    )

    message_max_length: int = Field(default=2000, env="MESSAGE_MAX_LENGTH")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"{self.database_driver}://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("admin_usernames", "cors_origins", mode="before")
    @classmethod
    def split_csv(cls, value: Any) -> list[str] | Any:
        if value in (None, "", Ellipsis):
            return []
        if isinstance(value, str):
            return [name.strip() for name in value.split(",") if name.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(name) for name in value]
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()

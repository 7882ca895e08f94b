from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Relay Messaging API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")
    log_level: str = Field(default="INFO", env="LOG_LEVEL", description="Level for application loggers")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://127.0.0.1",
            "http://127.0.0.1:3000",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )
    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        env="CORS_ALLOW_ORIGIN_REGEX",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_dsn: str | None = Field(
        default=None,
        alias="DATABASE_URL",
        description="Full SQLAlchemy URL; overrides the DB_* parts when set",
    )
    database_user: str = Field(default="relay", env="DB_USER")
    database_password: str = Field(default="relay", env="DB_PASSWORD")
    database_host: str = Field(default="db", env="DB_HOST")
    database_port: int = Field(default=3306, env="DB_PORT")
    database_name: str = Field(default="relay", env="DB_NAME")
    database_pool_size: int = Field(default=10, env="DB_POOL_SIZE")
    database_max_overflow: int = Field(default=20, env="DB_MAX_OVERFLOW")
    database_pool_recycle_seconds: int = Field(default=1800, env="DB_POOL_RECYCLE_SECONDS")

    jwt_secret_key: str = Field(default="changeme", env="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", env="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=30, env="ACCESS_TOKEN_EXPIRE_MINUTES")
    stream_token_expire_minutes: int = Field(
        default=24 * 60,
        env="STREAM_TOKEN_EXPIRE_MINUTES",
        description="Lifetime of tokens issued for realtime subscriptions",
    )

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")

    mark_read_batch_max_size: int = Field(
        default=500,
        env="MARK_READ_BATCH_MAX_SIZE",
        description="Largest number of message ids accepted by a batch mark-read call",
    )
    recent_unread_default_limit: int = Field(default=5, env="RECENT_UNREAD_DEFAULT_LIMIT")
    recent_unread_max_limit: int = Field(default=50, env="RECENT_UNREAD_MAX_LIMIT")
    unread_preview_length: int = Field(
        default=50,
        env="UNREAD_PREVIEW_LENGTH",
        description="Number of characters kept in notification previews",
    )
    store_retry_attempts: int = Field(
        default=1,
        env="STORE_RETRY_ATTEMPTS",
        description="How many times a failed read-state write is retried before surfacing",
    )

    delivery_heartbeat_interval_seconds: float = Field(
        default=30.0,
        env="DELIVERY_HEARTBEAT_INTERVAL_SECONDS",
        description="Interval between heartbeat events on realtime streams",
    )
    delivery_queue_size: int = Field(
        default=100,
        env="DELIVERY_QUEUE_SIZE",
        description="Pending events buffered per connection before it is treated as dead",
    )
    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to relay delivery events between nodes",
    )
    realtime_namespace: str = Field(default="relay.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_dsn:
            return self.database_dsn
        return (
            f"mysql+pymysql://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("store_retry_attempts", mode="after")
    @classmethod
    def ensure_non_negative(cls, value: int) -> int:
        return max(int(value), 0)

    @field_validator("delivery_queue_size", mode="after")
    @classmethod
    def ensure_bounded_queue(cls, value: int) -> int:
        # asyncio treats maxsize=0 as unbounded
        return max(int(value), 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()

"""Settings for client sessions talking to the Relay API."""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Client-side tuning loaded from ``RELAY_*`` environment variables."""

    base_url: str = Field(default="http://localhost:8000", description="Root URL of the Relay API")
    request_timeout_seconds: float = Field(default=10.0)

    cache_max_entries: int = Field(default=1000, ge=1)
    cache_ttl_seconds: float = Field(default=30 * 60, gt=0)

    unread_poll_interval_seconds: float = Field(default=30.0, gt=0)
    unread_refresh_debounce_seconds: float = Field(default=1.0, ge=0)

    stream_reconnect_base_delay: float = Field(default=1.0, gt=0)
    stream_reconnect_max_delay: float = Field(default=30.0, gt=0)

    model_config = SettingsConfigDict(env_prefix="RELAY_", extra="ignore")


@lru_cache
def get_client_settings() -> ClientSettings:
    return ClientSettings()

"""Configuration for the watch party sync service."""

from __future__ import annotations

import importlib.metadata
from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment configuration."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    api_version: str = Field("1.0.0", description="Semantic version returned by health endpoints.")
    log_config_path: str = Field(
        "observability/logging.json",
        alias="LOG_CONFIG_PATH",
        description="logging.config.dictConfig JSON file, relative to the working directory.",
    )
    redis_url: str = Field(
        "redis://localhost:6379/0",
        alias="REDIS_URL",
        description="Redis connection string for the pub/sub bus and the redis store backend.",
    )
    store_backend: Literal["memory", "redis"] = Field(
        "memory",
        alias="STORE_BACKEND",
        description="Where party logs and playback state are kept.",
    )
    ws_api_key: str | None = Field(
        default=None,
        alias="WS_API_KEY",
        description="Static bearer token for WebSocket authentication.",
    )
    max_connections_per_party: int = Field(
        32,
        ge=1,
        le=500,
        description="Safety cap for simultaneous websocket connections per party.",
    )
    max_parties: int = Field(
        1000,
        ge=1,
        description="Max number of party channels tracked by the hub.",
    )
    log_page_size: int = Field(
        200,
        ge=1,
        le=5000,
        description="Entries fetched per page when reading a party log.",
    )
    max_message_length: int = Field(
        2000,
        ge=1,
        description="Upper bound for chat message text.",
    )
    subscriber_queue_limit: int = Field(
        256,
        ge=1,
        description="Undelivered envelopes buffered per subscriber before it is dropped.",
    )
    delivery_max_attempts: int = Field(
        3,
        ge=1,
        le=10,
        description="Send attempts per envelope before a subscriber is dropped.",
    )
    delivery_retry_delay_ms: int = Field(
        50,
        ge=0,
        le=10000,
        description="Base delay between delivery attempts, doubled on each retry.",
    )
    presence_ttl_seconds: float = Field(
        30.0,
        gt=0,
        description="Visibility heartbeats older than this count as hidden.",
    )

    # Optional in-app rate limit (dev/staging)
    rate_limit_enabled: bool = Field(
        False,
        description="Enable in-app rate limit for chat message endpoint",
        alias="RATE_LIMIT_ENABLED",
    )
    rate_limit_rps: float = Field(
        5.0,
        ge=0.1,
        description="Requests per second per key",
        alias="RATE_LIMIT_RPS",
    )
    rate_limit_burst: int = Field(
        10,
        ge=1,
        description="Burst capacity for token bucket",
        alias="RATE_LIMIT_BURST",
    )


class HealthPayload(BaseModel):
    """Health-check response payload."""

    status: Literal["ok"]
    api_version: str


def package_version() -> str:
    """Installed distribution version, or a dev marker when running from source."""

    try:
        return importlib.metadata.version("watchparty-sync")
    except importlib.metadata.PackageNotFoundError:
        return "0.1.0-dev"


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance.

    Returns:
        Settings: Loaded environment settings.
    """

    return Settings()

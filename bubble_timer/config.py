"""Application settings and configuration."""

import logging
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # App
    app_name: str = "Bubble Timer Backend"
    app_version: str = "0.1.0"

    # Storage table identifiers
    timers_table_name: str = "timers"
    shared_timers_table_name: str = "shared_timers"
    user_connections_table_name: str = "user_connections"
    device_tokens_table_name: str = "device_tokens"

    # Push (FCM)
    push_enabled: bool = False
    google_application_credentials: str = ""

    # CORS
    cors_origin: str = "http://localhost:4000"

    # Identity is verified upstream; these headers carry the result
    identity_header: str = "X-Authenticated-User"
    device_header: str = "DeviceId"

    # WebSocket
    websocket_keepalive_seconds: int = 30

    log_level: str = "INFO"


@lru_cache
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

"""Application configuration."""

import os
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    admin_token: str
    renderer_base_url: str
    renderer_api_key: str | None = None
    session_store_backend: Literal["supabase", "memory"] = "supabase"
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    renderer_call_timeout_seconds: float = 10.0
    renderer_max_attempts: int = 4
    retry_backoff_base_seconds: float = 0.5
    retry_backoff_max_seconds: float = 8.0
    provisioning_timeout_seconds: float = 45.0
    health_poll_interval_seconds: float = 3.0
    health_poll_jitter_seconds: float = Field(default=1.0, ge=0)
    orphan_staleness_seconds: float = 120.0
    sweep_interval_seconds: float = 30.0
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_poll_jitter(self) -> "Settings":
        if self.health_poll_jitter_seconds >= self.health_poll_interval_seconds:
            raise ValueError(
                "HEALTH_POLL_JITTER_SECONDS must be smaller than "
                "HEALTH_POLL_INTERVAL_SECONDS"
            )
        return self


def normalize_base_url(raw: str) -> str:
    """Strip whitespace and trailing slashes from a service base URL."""
    cleaned = raw.strip().rstrip("/")
    if not cleaned:
        raise ValueError("Base URL must not be empty")
    return cleaned

"""Dependency providers and settings management."""

from __future__ import annotations

from functools import lru_cache
from typing import TYPE_CHECKING, List, Optional

from fastapi import Request
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from .context import AppContext


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    DATABASE_URL: str

    # Empty REDIS_URL disables the metrics cache entirely
    REDIS_URL: str = ""
    METRICS_CACHE_TTL_SECONDS: int = 120

    ABANDONMENT_THRESHOLD_MINUTES: int = 60

    # Shopify REST backfill
    SHOPIFY_API_VERSION: str = "2024-07"
    SHOPIFY_REQUEST_DELAY_SECONDS: float = 0.5
    SHOPIFY_ORDER_LOOKBACK_DAYS: int = 90

    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    CORS_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]


def get_context(request: Request) -> "AppContext":
    """Return the process-wide AppContext attached by create_app()."""
    return request.app.state.context

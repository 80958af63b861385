"""
Environment configuration — single source of truth for all settings.

Uses pydantic-settings for type-safe config with .env file support.
All values have sensible defaults for local development.

Usage:
    from backend.app.core.config import settings
    print(settings.RETRY_MAX_ATTEMPTS)

Providers are configured as a JSON list, e.g.:

    PROVIDERS='[{"name": "resend", "channel": "email", "priority": 10},
                {"name": "sendgrid", "channel": "email", "priority": 5,
                 "kind": "http", "endpoint": "https://relay.local/send"}]'
"""

from __future__ import annotations

from functools import lru_cache
from typing import List, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProviderConfig(BaseModel):
    """Persisted configuration of one channel provider."""

    name: str
    channel: str  # email | sms | push
    priority: int = 5  # higher = tried first
    enabled: bool = True
    kind: str = "simulation"  # simulation | http
    endpoint: Optional[str] = None
    api_key: Optional[str] = None
    sender: Optional[str] = None
    timeout_seconds: Optional[float] = None
    rate_limit_per_second: Optional[float] = None
    rate_limit_burst: Optional[int] = None


class Settings(BaseSettings):
    """
    Application-wide settings loaded from environment variables or .env file.

    Precedence: env var > .env file > default value
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ── Application ──
    APP_NAME: str = "Notification Delivery Engine"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"  # development | staging | production
    DEBUG: bool = True
    LOG_LEVEL: str = "INFO"  # DEBUG | INFO | WARNING | ERROR | CRITICAL

    # ── Server ──
    HOST: str = "0.0.0.0"
    PORT: int = 3102
    START_WORKERS: bool = True  # run the dispatcher pool inside the API process

    # ── CORS ──
    CORS_ORIGINS: List[str] = ["http://localhost:3000"]
    CORS_ALLOW_ALL: bool = True  # False in production

    # ── Storage backends ──
    STORE_BACKEND: str = "memory"  # memory | sql
    COUNTER_BACKEND: str = "memory"  # memory | redis
    DATABASE_URL: str = "sqlite:///./notifications.db"
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False  # log SQL queries
    REDIS_URL: str = "redis://localhost:6379/0"

    # ── Workers ──
    WORKER_CONCURRENCY: int = 5
    WORKER_POLL_INTERVAL: float = 1.0  # seconds between empty polls
    LEASE_SECONDS: float = 30.0
    PROVIDER_TIMEOUT_SECONDS: float = 30.0
    PROVIDER_REFRESH_INTERVAL: float = 60.0

    # ── Retry ──
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BASE_DELAY: float = 1.0  # seconds
    RETRY_MAX_DELAY: float = 300.0  # seconds
    RETRY_JITTER: float = 0.2  # ±20%
    RATE_LIMIT_RETRY_DELAY: float = 30.0  # seconds

    # ── Circuit breaker ──
    CIRCUIT_FAILURE_THRESHOLD: int = 10
    CIRCUIT_COOL_DOWN: float = 300.0
    CIRCUIT_MAX_COOL_DOWN: float = 3600.0
    CIRCUIT_COUNT_FAILOVER_FAILURES: bool = True

    # ── Recipient rate limits (per window) ──
    RATE_LIMIT_EMAIL: int = 100
    RATE_LIMIT_SMS: int = 20
    RATE_LIMIT_PUSH: int = 200
    RATE_LIMIT_WINDOW_SECONDS: int = 3600

    # ── Policies ──
    DEDUP_WINDOW_SECONDS: int = 3600
    QUIET_HOURS_ENABLED: bool = True
    DRY_RUN: bool = False

    # ── Webhooks ──
    WEBHOOK_SECRET: Optional[str] = None
    WEBHOOK_VERIFY: bool = True

    # ── Providers ──
    PROVIDERS: List[ProviderConfig] = Field(
        default_factory=lambda: [
            ProviderConfig(name="simulated-email", channel="email"),
            ProviderConfig(name="simulated-sms", channel="sms"),
            ProviderConfig(name="simulated-push", channel="push"),
        ]
    )

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    def recipient_limit(self, channel: str) -> int:
        """Per-recipient send allowance for one window on a channel."""
        return {
            "email": self.RATE_LIMIT_EMAIL,
            "sms": self.RATE_LIMIT_SMS,
            "push": self.RATE_LIMIT_PUSH,
        }.get(channel, self.RATE_LIMIT_EMAIL)


@lru_cache()
def get_settings() -> Settings:
    """Cached settings singleton."""
    return Settings()


settings = get_settings()

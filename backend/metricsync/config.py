"""Settings management.

WHAT:
    Single pydantic-settings object for the worker, the enqueue helpers and
    the diagnostics API.

WHY:
    - One place for tunables (throttle, backoff ceilings, sampling rates)
    - Values come from the environment or a local .env file
    - Cached so every caller sees the same instance
"""

from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment or .env."""

    # Store
    DATABASE_URL: str = "sqlite:///./metricsync.db"

    # Redis Configuration (job queue transport + worker heartbeats)
    REDIS_URL: str = "redis://localhost:6379/0"
    REFRESH_QUEUE_NAME: str = "metricsync:refresh"

    # Worker throughput
    DISPATCH_INTERVAL_SECONDS: float = 2.0  # 1 job dispatch per 2s per worker
    MAX_JOB_TRIES: int = 3
    JOB_TIMEOUT_SECONDS: int = 600
    # Deadline for one ads API call; keep well below JOB_TIMEOUT_SECONDS
    GATEWAY_TIMEOUT_SECONDS: float = 120.0

    # Liveness
    HEARTBEAT_INTERVAL_SECONDS: int = 15
    HEARTBEAT_STALE_SECONDS: int = 60
    HEARTBEAT_DEAD_SECONDS: int = 300

    # Enqueue guardrails
    ENQUEUE_COOLDOWN_SECONDS: float = 2.0
    NORMAL_PRIORITY_DEFER_SECONDS: float = 2.0

    # Hierarchy validation
    VALIDATION_SAMPLE_RATE: float = 0.10
    VALIDATION_TOLERANCE: float = 0.05
    MISMATCH_RETENTION_DAYS: int = 90

    # "Today" for PARTIAL/FINAL freshness when a job carries no timezone
    REPORTING_TIMEZONE: str = "UTC"

    # Diagnostics API
    ADMIN_SECRET: str = ""

    # Observability
    SENTRY_DSN: Optional[str] = None
    ENVIRONMENT: str = "development"
    RELEASE_VERSION: Optional[str] = None

    # Google Ads gateway credentials
    GOOGLE_DEVELOPER_TOKEN: Optional[str] = None
    GOOGLE_CLIENT_ID: Optional[str] = None
    GOOGLE_CLIENT_SECRET: Optional[str] = None

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()  # type: ignore[call-arg]

"""Application settings loaded from environment variables.

Environment Configuration:
    SHROUD_ENV: Deployment environment (local | test | staging | prod)
    DATABASE_URL: Database connection string (required)
    SHROUD_INTERNAL_SECRET: Internal API secret (required in staging/prod)

Redis / Celery Configuration:
    REDIS_URL: Redis connection string (required for worker)
    CELERY_BROKER_URL: Celery broker URL (defaults to REDIS_URL)
    CELERY_RESULT_BACKEND: Celery result backend URL (defaults to REDIS_URL)

Exclusion Engine Configuration:
    EXCLUSION_RECOMPUTE_WORKERS: Size of the recompute worker pool (default 4)
    EXCLUSION_QUERY_WAIT_TIMEOUT_S: How long a query waits for a recompute (default 5.0)
    SNAPSHOT_RETRY_DELAYS_S: Comma-separated backoff delays for graph/rule reads
    EXCLUSION_PERSIST_PROJECTION: Mirror computed exclusions into SQL (default false)
"""

from enum import Enum
from functools import lru_cache
from typing import Annotated

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings


class Environment(str, Enum):
    """Valid deployment environments."""

    LOCAL = "local"
    TEST = "test"
    STAGING = "staging"
    PROD = "prod"


class Settings(BaseSettings):
    """Application configuration.

    Settings are loaded from environment variables.
    Validation rules:
    - DATABASE_URL is always required
    - SHROUD_INTERNAL_SECRET is required in staging and prod only
    - EXCLUSION_RECOMPUTE_WORKERS must be at least 1
    - SNAPSHOT_RETRY_DELAYS_S must parse as non-negative numbers
    """

    shroud_env: Environment = Field(default=Environment.LOCAL, alias="SHROUD_ENV")
    database_url: Annotated[str, Field(alias="DATABASE_URL")]
    shroud_internal_secret: str | None = Field(default=None, alias="SHROUD_INTERNAL_SECRET")

    # Redis / Celery settings
    redis_url: str | None = Field(default=None, alias="REDIS_URL")
    celery_broker_url: str | None = Field(default=None, alias="CELERY_BROKER_URL")
    celery_result_backend: str | None = Field(default=None, alias="CELERY_RESULT_BACKEND")

    # Exclusion engine
    exclusion_recompute_workers: int = Field(default=4, alias="EXCLUSION_RECOMPUTE_WORKERS")
    exclusion_query_wait_timeout_s: float = Field(
        default=5.0, alias="EXCLUSION_QUERY_WAIT_TIMEOUT_S"
    )
    snapshot_retry_delays_s: str = Field(default="0.1,0.5,2.0", alias="SNAPSHOT_RETRY_DELAYS_S")
    exclusion_persist_projection: bool = Field(default=False, alias="EXCLUSION_PERSIST_PROJECTION")

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @model_validator(mode="after")
    def validate_required_settings(self) -> "Settings":
        """Ensure required settings are set for the current environment."""
        if self.shroud_env in (Environment.STAGING, Environment.PROD):
            if not self.shroud_internal_secret:
                raise ValueError(
                    f"SHROUD_INTERNAL_SECRET is required for SHROUD_ENV={self.shroud_env.value}"
                )

        if self.exclusion_recompute_workers < 1:
            raise ValueError("EXCLUSION_RECOMPUTE_WORKERS must be at least 1")

        if self.exclusion_query_wait_timeout_s <= 0:
            raise ValueError("EXCLUSION_QUERY_WAIT_TIMEOUT_S must be positive")

        # Surface malformed delay lists at startup rather than on first retry
        _ = self.retry_delays

        return self

    @property
    def requires_internal_header(self) -> bool:
        """Whether requests must include the internal secret header."""
        return self.shroud_env in (Environment.STAGING, Environment.PROD)

    @property
    def retry_delays(self) -> tuple[float, ...]:
        """Parse comma-separated retry delays into a tuple of seconds."""
        delays = []
        for part in self.snapshot_retry_delays_s.split(","):
            part = part.strip()
            if not part:
                continue
            try:
                delay = float(part)
            except ValueError as exc:
                raise ValueError(f"invalid SNAPSHOT_RETRY_DELAYS_S entry: {part!r}") from exc
            if delay < 0:
                raise ValueError(f"negative SNAPSHOT_RETRY_DELAYS_S entry: {part!r}")
            delays.append(delay)
        return tuple(delays)

    @property
    def effective_celery_broker_url(self) -> str | None:
        """Return Celery broker URL, falling back to REDIS_URL if not set."""
        return self.celery_broker_url or self.redis_url

    @property
    def effective_celery_result_backend(self) -> str | None:
        """Return Celery result backend URL, falling back to REDIS_URL if not set."""
        return self.celery_result_backend or self.redis_url


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache. Useful for testing."""
    get_settings.cache_clear()

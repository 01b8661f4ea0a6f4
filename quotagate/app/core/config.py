import os

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    All settings can be configured via environment variables or .env file.
    """

    # Debug mode - enables detailed error responses
    debug: bool = False

    # PostgreSQL settings (fallback counter store)
    db_host: str = "localhost"
    db_port: int = 5432
    db_test_port: int = 5433
    db_user: str = "quotagate"
    db_password: str = "quotagate"
    db_name: str = "quotagate"
    db_test_name: str = "quotagate_test"

    # Connection pool settings
    db_pool_size: int = 20
    db_max_overflow: int = 10
    db_pool_timeout: int = 5  # Seconds to wait for a pooled connection
    db_pool_recycle: int = 300
    db_pool_pre_ping: bool = True

    # SQLite pool settings (file-based SQLite for single-instance deployments)
    db_sqlite_pool_size: int = 5
    db_sqlite_max_overflow: int = 5

    # asyncpg per-command timeout in seconds
    db_command_timeout: float = 5.0

    # Explicit DATABASE_URL (takes priority over db_* settings)
    database_url_override: str = Field(default="", validation_alias="DATABASE_URL")

    @property
    def database_url(self) -> str:
        """Build database connection URL.

        Priority:
        1. database_url_override (from DATABASE_URL env var or .env file)
        2. Built from db_* settings
        """
        if self.database_url_override:
            return self.database_url_override

        if os.getenv("PYTEST_CURRENT_TEST"):
            return (
                f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
                f"{self.db_host}:{self.db_test_port}/{self.db_test_name}"
            )
        return (
            f"postgresql+asyncpg://{self.db_user}:{self.db_password}@"
            f"{self.db_host}:{self.db_port}/{self.db_name}"
        )

    # Logging settings
    log_level: str = "INFO"
    log_format: str = "text"  # text | structured | json

    # Redis settings (shared counter store)
    redis_enabled: bool = False
    redis_url: str = "redis://localhost:6379/0"
    redis_socket_timeout: float = 0.5

    # Rate limiting settings
    rate_limit_enabled: bool = True
    rate_limit_key_prefix: str = "rl"
    rate_limit_store_timeout: float = 0.25  # Seconds per shared-store call
    rate_limit_fallback_enabled: bool = True
    rate_limit_fallback_timeout: float = 1.0  # Seconds per fallback-store call
    rate_limit_fallback_purge_interval: float = 300.0  # Seconds between fallback row purges
    rate_limit_trusted_proxy_hops: int = 0
    rate_limit_in_memory_max_entries: int = 100_000

    # Plan used when the plan lookup has nothing for an identifier (0 = unlimited)
    rate_limit_default_requests_per_minute: int = 60
    rate_limit_default_requests_per_hour: int = 1000
    rate_limit_default_requests_per_day: int = 10000

    def default_plan(self):
        """Build the plan applied to identifiers unknown to the plan lookup."""
        from quotagate.app.services.rate_limit.models import Plan

        return Plan(
            requests_per_minute=self.rate_limit_default_requests_per_minute,
            requests_per_hour=self.rate_limit_default_requests_per_hour,
            requests_per_day=self.rate_limit_default_requests_per_day,
        )

    @field_validator(
        "rate_limit_default_requests_per_minute",
        "rate_limit_default_requests_per_hour",
        "rate_limit_default_requests_per_day",
        "rate_limit_trusted_proxy_hops",
    )
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate limits and hop counts are not negative (0 disables)."""
        if v < 0:
            raise ValueError("value must not be negative")
        return v

    @field_validator(
        "rate_limit_store_timeout",
        "rate_limit_fallback_timeout",
        "rate_limit_fallback_purge_interval",
        "redis_socket_timeout",
    )
    @classmethod
    def validate_timeout_positive(cls, v: float) -> float:
        """Validate timeout values are positive."""
        if v <= 0:
            raise ValueError("Timeout values must be positive")
        return v

    @field_validator(
        "db_pool_size",
        "db_max_overflow",
        "db_sqlite_pool_size",
        "db_sqlite_max_overflow",
        "rate_limit_in_memory_max_entries",
    )
    @classmethod
    def validate_pool_size_positive(cls, v: int) -> int:
        """Validate size values are positive."""
        if v < 1:
            raise ValueError("size values must be at least 1")
        return v

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        v = v.lower()
        if v not in ("text", "structured", "json"):
            raise ValueError("log_format must be one of: text, structured, json")
        return v

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Global settings instance
settings = Settings()

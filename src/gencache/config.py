"""Application configuration using Pydantic Settings.

This module provides centralized configuration management with environment
variable validation, type coercion, and default values.
"""

from enum import Enum
from functools import lru_cache

from pydantic import Field, SecretStr, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Application environment."""

    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class LogLevel(str, Enum):
    """Log level options."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log format options."""

    JSON = "json"
    CONSOLE = "console"


class Settings(BaseSettings):
    """Application settings with environment variable validation.

    All settings can be overridden via environment variables.
    Sensitive values should be provided via environment variables or .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ========================================
    # Application
    # ========================================
    app_env: Environment = Field(
        default=Environment.DEVELOPMENT,
        description="Application environment",
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    app_name: str = Field(
        default="gencache",
        description="Application name",
    )

    # ========================================
    # Logging
    # ========================================
    log_level: LogLevel = Field(
        default=LogLevel.INFO,
        description="Logging level",
    )
    log_format: LogFormat = Field(
        default=LogFormat.CONSOLE,
        description="Log output format (json for production, console for dev)",
    )

    # ========================================
    # Database
    # ========================================
    database_url: str = Field(
        default="sqlite+aiosqlite:///./gencache.db",
        description="Database URL with async driver",
    )
    database_pool_min: int = Field(
        default=2,
        ge=1,
        description="Minimum database connection pool size",
    )
    database_pool_max: int = Field(
        default=10,
        ge=1,
        description="Maximum database connection pool size",
    )

    # ========================================
    # Redis
    # ========================================
    redis_url: str | None = Field(
        default=None,
        description="Redis URL for shared quota counters (unset = in-process quota)",
    )
    quota_namespace: str = Field(
        default="default",
        description="Quota bucket name, one per upstream API key",
    )

    # ========================================
    # Quota
    # ========================================
    quota_per_minute: int = Field(
        default=12,
        ge=1,
        description="Upstream calls admitted per minute (kept below provider RPM)",
    )
    quota_per_day: int = Field(
        default=1400,
        ge=1,
        description="Upstream calls admitted per day (kept below provider RPD)",
    )

    # ========================================
    # Retry
    # ========================================
    retry_max_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum upstream attempts per generation",
    )
    retry_backoff_base_s: float = Field(
        default=1.0,
        ge=0.0,
        description="Base delay for exponential backoff between attempts",
    )
    retry_backoff_max_s: float = Field(
        default=30.0,
        ge=0.0,
        description="Cap on a single backoff delay",
    )
    upstream_timeout_s: float = Field(
        default=60.0,
        gt=0.0,
        description="Bounded wait for a single upstream call",
    )

    # ========================================
    # Cache
    # ========================================
    cache_default_expiry_days: float | None = Field(
        default=None,
        gt=0.0,
        description="Expiry applied when a request does not set one (unset = never)",
    )
    cache_coalesce_inflight: bool = Field(
        default=True,
        description="Share one generation between concurrent misses for the same entry",
    )

    # ========================================
    # OpenAI
    # ========================================
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="OpenAI API key used by the default upstream generator",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model to use",
    )
    openai_temperature: float = Field(
        default=0.3,
        ge=0.0,
        le=2.0,
        description="Sampling temperature",
    )
    openai_max_tokens: int = Field(
        default=8192,
        ge=1,
        description="Maximum completion tokens per call",
    )

    # ========================================
    # Derived Properties
    # ========================================
    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app_env == Environment.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.app_env == Environment.PRODUCTION

    @property
    def use_json_logs(self) -> bool:
        """Check if JSON logging should be used."""
        return self.log_format == LogFormat.JSON or self.is_production

    @field_validator("retry_backoff_max_s")
    @classmethod
    def validate_backoff_cap(cls, v: float, info: ValidationInfo) -> float:
        """Ensure the backoff cap is not below the base delay."""
        base = info.data.get("retry_backoff_base_s", 1.0)
        if v < base:
            raise ValueError("retry_backoff_max_s must be >= retry_backoff_base_s")
        return v


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings.

    This function is cached to avoid re-reading environment variables
    on every access.

    Returns:
        Settings: Application settings instance
    """
    return Settings()

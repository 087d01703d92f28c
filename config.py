"""
Configuration management for the QuantForge data layer.
Centralized, strongly typed settings loaded from environment variables.
"""
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

from pydantic import Field, ValidationError, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from utils.exceptions import ConfigurationError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development")
    service_name: str = Field(default="quantforge-data")
    service_version: str = Field(default="1.0.0")

    # Supabase configuration
    supabase_url: str = Field(default="")
    supabase_anon_key: str = Field(default="")
    supabase_service_role_key: Optional[str] = Field(default=None)
    default_region: str = Field(default="default")

    # Connection pool
    max_connections: int = Field(default=10, ge=1, description="Maximum connections per role")
    min_connections: int = Field(default=1, ge=0, description="Connections kept warm per role")
    acquire_timeout_ms: int = Field(default=5000, ge=1)
    idle_timeout_ms: int = Field(default=180_000, ge=1)
    health_check_interval_ms: int = Field(default=30_000, ge=1)
    unhealthy_threshold: int = Field(default=3, ge=1, description="Consecutive failures before a connection is excluded")
    unhealthy_cooldown_ms: int = Field(default=30_000, ge=0)

    # Query cache
    default_ttl_ms: int = Field(default=300_000, ge=1)
    max_cache_entries: int = Field(default=1000, ge=1)
    max_cache_bytes: Optional[int] = Field(default=10 * 1024 * 1024, ge=1)
    cache_sweep_interval_ms: int = Field(default=60_000, ge=1)

    # Outbound calls and retry
    query_timeout_ms: int = Field(default=30_000, ge=1)
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_initial_delay_ms: int = Field(default=200, ge=0)
    retry_max_delay_ms: int = Field(default=5000, ge=0)
    retry_jitter_ms: int = Field(default=100, ge=0, description="Random delay added to each backoff")
    circuit_breaker_threshold: int = Field(default=5, ge=1, description="Consecutive transport failures before failing fast")
    circuit_breaker_reset_ms: int = Field(default=60_000, ge=1)

    # Batch operations
    batch_size: int = Field(default=50, ge=1)
    batch_concurrency: int = Field(default=1, ge=1)

    # Metrics
    metrics_retention_ms: int = Field(default=86_400_000, ge=1)
    slow_query_threshold_ms: float = Field(default=1000.0, ge=0)

    # Logging
    log_level: str = Field(default="INFO")
    log_file: Optional[str] = Field(default=None)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Settings":
        if self.min_connections > self.max_connections:
            raise ValueError(
                f"min_connections ({self.min_connections}) cannot exceed "
                f"max_connections ({self.max_connections})"
            )
        if self.retry_max_delay_ms < self.retry_initial_delay_ms:
            raise ValueError("retry_max_delay_ms must be >= retry_initial_delay_ms")
        if self.log_level.upper() not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {self.log_level}")
        return self

    @property
    def is_production(self) -> bool:
        return self.environment.lower() == "production"

    @property
    def write_key(self) -> str:
        """Key used by write-role connections. Falls back to the anon key."""
        return self.supabase_service_role_key or self.supabase_anon_key

    def get_safe_config(self) -> Dict[str, Any]:
        """Get configuration safe for logging (no secrets)."""
        data = self.model_dump()
        for secret in ("supabase_anon_key", "supabase_service_role_key"):
            if data.get(secret):
                data[secret] = "***"
        return data


def load_settings(**overrides: Any) -> Settings:
    """Build and validate settings once, raising ConfigurationError on bad values."""
    try:
        settings = Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(
            f"Invalid data layer configuration: {e.error_count()} error(s)",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e

    if settings.is_production and not settings.supabase_url:
        logger.warning("CONFIG WARNING: SUPABASE_URL not set - database operations will fail")
    return settings


@lru_cache()
def get_settings() -> Settings:
    """Settings for the application entry point. Components receive Settings explicitly."""
    return load_settings()

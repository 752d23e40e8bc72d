"""
Environment-aware configuration settings for the chain engine.

Supports dev, test, and prod environments with appropriate defaults.
"""

import logging
from enum import Enum
from functools import lru_cache
from typing import Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    """Supported deployment environments."""

    DEV = "dev"
    TEST = "test"
    PROD = "prod"


class ExecutorSettings(BaseSettings):
    """Scheduler defaults applied when ExecutionOptions leave a value unset."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_EXECUTOR_")

    default_batch_size: int = Field(default=10, ge=1, description="Batch size for batch mode")
    default_timeout: Optional[float] = Field(
        default=None, gt=0, description="Per-item timeout (seconds) when neither item nor options set one"
    )
    max_concurrency: Optional[int] = Field(
        default=None, ge=1, description="Upper bound on parallel chunk size"
    )


class RetrySettings(BaseSettings):
    """Backoff policy for workflow step retries."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_RETRY_")

    initial_delay: float = Field(default=0.5, ge=0, description="Initial retry delay (seconds)")
    max_delay: float = Field(default=10.0, ge=0, description="Maximum retry delay (seconds)")
    exponential_base: float = Field(default=2.0, ge=1.0, le=10.0, description="Exponential backoff base")
    jitter: bool = Field(default=True, description="Add jitter to retry delays")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetrySettings":
        """Ensure max_delay is greater than initial_delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self


class HttpSettings(BaseSettings):
    """Defaults for the httpx transport."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_HTTP_")

    base_url: str = Field(default="", description="Prefix for relative request URLs")
    timeout: float = Field(default=30.0, gt=0, description="Client timeout (seconds)")
    verify: bool = Field(default=True, description="Verify TLS certificates")
    follow_redirects: bool = Field(default=True)
    max_connections: int = Field(default=100, ge=1, description="Connection pool size")


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_prefix="CHAIN_ENGINE_",
        case_sensitive=False,
        extra="ignore",        # Ignore unknown environment variables
    )

    app_name: str = Field(default="Chain Engine")
    environment: Environment = Field(default=Environment.DEV)
    debug: bool = Field(default=False)
    log_level: str = Field(default="INFO")

    # Sub-settings
    executor: ExecutorSettings = Field(default_factory=ExecutorSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    http: HttpSettings = Field(default_factory=HttpSettings)

    @field_validator("environment", mode="before")
    @classmethod
    def validate_environment(cls, v: str | Environment) -> Environment:
        """Validate and convert environment string to enum."""
        if isinstance(v, Environment):
            return v
        return Environment(v.lower())

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"Unknown log level: {v}")
        return level

    @property
    def is_development(self) -> bool:
        return self.environment == Environment.DEV

    @property
    def is_testing(self) -> bool:
        return self.environment == Environment.TEST

    @property
    def is_production(self) -> bool:
        return self.environment == Environment.PROD


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Uses lru_cache to ensure settings are only loaded once.
    """
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from settings."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

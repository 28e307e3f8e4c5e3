"""
Application Configuration Module

Centralizes all configuration using environment variables with Pydantic Settings.
Supports three modes:
    - DEVELOPMENT: SQLite database and in-process change feed (no services needed)
    - STAGING: Real database and Redis change feed with test data
    - PRODUCTION: PostgreSQL and Redis change feed

The ENV_MODE variable is informational for most components; the concrete
backends are selected by DATABASE_URL and CHANGE_FEED, and
validate_production_config() reports combinations that are unsafe outside
of development.

Usage:
    from tableorder.core.config import get_settings

    settings = get_settings()
    if settings.change_feed == "redis":
        ...
"""

import logging
import sys
from enum import Enum
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EnvironmentMode(str, Enum):
    """
    Application environment modes.

    Attributes:
        DEVELOPMENT: Local testing with SQLite and the in-process feed
        PRODUCTION: Live environment
        STAGING: Pre-production environment with production-like backends
    """
    DEVELOPMENT = "development"
    PRODUCTION = "production"
    STAGING = "staging"


class ChangeFeedBackend(str, Enum):
    """Which change-feed transport delivers row notifications."""
    LOCAL = "local"
    REDIS = "redis"


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    All settings can be overridden via environment variables or .env file.

    Attributes:
        env_mode: Current environment (development/production/staging)
        debug: Enable verbose logging and error details

        # API Configuration
        api_host: Host to bind the API server
        api_port: Port for the API server
        cors_origins: Comma-separated list of allowed origins

        # Database
        database_url: SQLAlchemy async connection string
        database_echo: Log every SQL statement

        # Change feed
        change_feed: "local" (single process) or "redis" (multi-process)
        redis_url: Redis connection string for the change feed
        redis_channel_prefix: Prefix of the per-table pub/sub channels
        feed_reconnect_initial_delay: First retry delay after a feed disconnect
        feed_reconnect_max_delay: Upper bound of the retry backoff
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # ENVIRONMENT
    # ==========================================================================

    env_mode: EnvironmentMode = Field(
        default=EnvironmentMode.DEVELOPMENT,
        description="Application environment mode"
    )
    debug: bool = Field(
        default=False,
        description="Enable debug mode with verbose logging"
    )

    # ==========================================================================
    # APPLICATION
    # ==========================================================================

    app_name: str = Field(
        default="Table Ordering Service",
        description="Application display name"
    )
    app_version: str = Field(
        default="1.0.0",
        description="Application version"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="API server host"
    )
    api_port: int = Field(
        default=8001,
        description="API server port"
    )
    cors_origins: str = Field(
        default="*",
        description="Comma-separated list of allowed CORS origins"
    )

    # ==========================================================================
    # DATABASE
    # ==========================================================================

    database_url: str = Field(
        default="sqlite+aiosqlite:///./data/tableorder.db",
        description="SQLAlchemy async database URL"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL statements"
    )

    # ==========================================================================
    # CHANGE FEED
    # ==========================================================================

    change_feed: ChangeFeedBackend = Field(
        default=ChangeFeedBackend.LOCAL,
        description="Change-feed transport (local or redis)"
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL"
    )
    redis_channel_prefix: str = Field(
        default="tableorder:changes",
        description="Prefix for per-table change channels"
    )
    feed_reconnect_initial_delay: float = Field(
        default=0.5,
        gt=0,
        description="Seconds before the first resubscribe attempt"
    )
    feed_reconnect_max_delay: float = Field(
        default=30.0,
        gt=0,
        description="Maximum seconds between resubscribe attempts"
    )

    # ==========================================================================
    # VALIDATORS
    # ==========================================================================

    @field_validator("env_mode", mode="before")
    @classmethod
    def validate_env_mode(cls, v: str) -> EnvironmentMode:
        """Convert string to EnvironmentMode enum."""
        if isinstance(v, EnvironmentMode):
            return v
        try:
            return EnvironmentMode(v.lower())
        except ValueError:
            valid = [e.value for e in EnvironmentMode]
            raise ValueError(f"Invalid env_mode. Must be one of: {valid}")

    @field_validator("change_feed", mode="before")
    @classmethod
    def validate_change_feed(cls, v: str) -> ChangeFeedBackend:
        """Accept the backend name in any case."""
        if isinstance(v, ChangeFeedBackend):
            return v
        try:
            return ChangeFeedBackend(v.lower())
        except ValueError:
            valid = [e.value for e in ChangeFeedBackend]
            raise ValueError(f"Invalid change_feed. Must be one of: {valid}")

    # ==========================================================================
    # COMPUTED PROPERTIES
    # ==========================================================================

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.env_mode == EnvironmentMode.DEVELOPMENT

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.env_mode == EnvironmentMode.PRODUCTION

    @property
    def is_sqlite(self) -> bool:
        """Check if the configured database is SQLite."""
        return self.database_url.startswith("sqlite")

    @property
    def cors_origins_list(self) -> list[str]:
        """Get allowed CORS origins as a list."""
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    # ==========================================================================
    # VALIDATION METHODS
    # ==========================================================================

    def validate_production_config(self) -> list[str]:
        """
        Report settings that are unsafe outside of development.

        Returns:
            List of problems (empty if the configuration is acceptable)
        """
        problems = []

        if not self.is_development:
            if self.is_sqlite:
                problems.append("DATABASE_URL points at SQLite")
            if self.change_feed == ChangeFeedBackend.LOCAL:
                problems.append("CHANGE_FEED=local only reaches one process")
            if self.feed_reconnect_initial_delay > self.feed_reconnect_max_delay:
                problems.append("FEED_RECONNECT_INITIAL_DELAY exceeds FEED_RECONNECT_MAX_DELAY")

        return problems


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Settings are loaded once per process so every component sees the
    same configuration.

    Returns:
        Settings: Configured application settings
    """
    return Settings()


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================

def setup_logging(level: int = logging.INFO) -> logging.Logger:
    """
    Configure application-wide logging.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)

    Returns:
        Configured package logger
    """
    settings = get_settings()

    if settings.debug:
        level = logging.DEBUG

    log_format = "%(asctime)s │ %(levelname)-8s │ %(name)-25s │ %(message)s"
    date_format = "%Y-%m-%d %H:%M:%S"

    logging.basicConfig(
        level=level,
        format=log_format,
        datefmt=date_format,
        handlers=[logging.StreamHandler(sys.stdout)],
    )

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)
    if not settings.database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    return logging.getLogger("tableorder")

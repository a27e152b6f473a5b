"""Centralized configuration management for BankSync.

This module provides a Pydantic Settings-based configuration system that
consolidates database, vault, sync, scheduler, browser and logging settings
with environment variable integration and type validation.
"""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """Database configuration settings."""

    model_config = ConfigDict(frozen=True)

    path: Path = Field(
        default=Path("data/duckdb/banksync.duckdb"),
        description="Path to DuckDB ledger database file",
    )
    create_dirs: bool = Field(
        default=True, description="Automatically create database directories"
    )

    @field_validator("path")
    @classmethod
    def validate_database_path(cls, v: Path) -> Path:
        """Ensure database path has correct extension."""
        if str(v) == ":memory:":
            return v
        if not str(v).endswith((".db", ".duckdb")):
            raise ValueError("Database path must end with .db or .duckdb")
        return v


class VaultConfig(BaseModel):
    """Credential vault configuration settings."""

    model_config = ConfigDict(frozen=True)

    master_secret: SecretStr | None = Field(
        default=None, description="Master secret the encryption key is derived from"
    )
    kdf_salt: str = Field(
        default="banksync_vault_salt",
        min_length=8,
        description="Application-wide salt for key derivation",
    )


class SyncConfig(BaseModel):
    """Per-run orchestration settings."""

    model_config = ConfigDict(frozen=True)

    run_timeout_seconds: float = Field(
        default=300.0, gt=0, description="Upper bound on a single sync run"
    )
    release_timeout_seconds: float = Field(
        default=30.0, gt=0, description="Upper bound on releasing a browser session"
    )
    auth_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Login attempts for retryable failures"
    )
    export_max_attempts: int = Field(
        default=3, ge=1, le=10, description="Export attempts for transient failures"
    )
    retry_delay_seconds: float = Field(
        default=2.0, ge=0.0, le=60.0, description="Delay between retry attempts"
    )
    circuit_breaker_threshold: int = Field(
        default=3,
        ge=1,
        le=50,
        description="Consecutive failed runs before a connection is suspended",
    )
    lookback_days: int = Field(
        default=30, ge=1, le=730, description="Days of history to export per run"
    )


class SchedulerConfig(BaseModel):
    """Polling scheduler settings."""

    model_config = ConfigDict(frozen=True)

    tick_interval_seconds: float = Field(
        default=60.0, gt=0, description="Seconds between scheduler ticks"
    )
    stagger_seconds: float = Field(
        default=2.0, ge=0.0, description="Delay between dispatches in one tick"
    )
    max_concurrent_sessions: int = Field(
        default=2, ge=1, le=16, description="Simultaneously active browser sessions"
    )


class BrowserConfig(BaseModel):
    """Headless browser settings used by connector adapters."""

    model_config = ConfigDict(frozen=True)

    headless: bool = Field(default=True, description="Run Chromium headless")
    navigation_timeout_ms: int = Field(default=120_000, ge=1_000)
    action_timeout_ms: int = Field(default=30_000, ge=1_000)
    locale: str = Field(default="en-AU")
    timezone_id: str = Field(default="Australia/Melbourne")


class LoggingConfig(BaseModel):
    """Logging configuration settings."""

    model_config = ConfigDict(frozen=True)

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    log_to_file: bool = Field(default=True, description="Enable file logging")
    log_file_path: Path = Field(
        default=Path("logs/banksync.log"), description="Path to log file"
    )
    max_file_size_mb: int = Field(
        default=50, ge=1, le=1000, description="Maximum log file size in MB"
    )
    backup_count: int = Field(
        default=5, ge=1, le=50, description="Number of log file backups to keep"
    )


class BankSyncSettings(BaseSettings):
    """Main application settings with environment variable integration.

    Environment variables are loaded with the BANKSYNC_ prefix.
    For nested configs, use double underscores: BANKSYNC_VAULT__MASTER_SECRET
    """

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    vault: VaultConfig = Field(default_factory=VaultConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    browser: BrowserConfig = Field(default_factory=BrowserConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    debug: bool = Field(default=False, description="Enable debug mode")
    environment: Literal["development", "staging", "production"] = Field(
        default="development", description="Application environment"
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BANKSYNC_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        frozen=True,
    )

    def create_directories(self) -> None:
        """Create necessary directories for the application."""
        directories = [self.logging.log_file_path.parent]
        if str(self.database.path) != ":memory:":
            directories.append(self.database.path.parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


_settings: BankSyncSettings | None = None


def get_settings() -> BankSyncSettings:
    """Get the process-wide settings instance.

    Settings are loaded once and cached.

    Returns:
        BankSyncSettings: The configuration instance

    Raises:
        ValueError: If configuration is invalid
    """
    global _settings

    if _settings is not None:
        return _settings

    try:
        settings = BankSyncSettings()
    except Exception as e:
        raise ValueError(f"Configuration error: {e}") from e

    if settings.database.create_dirs:
        settings.create_directories()

    _settings = settings
    return settings


def reload_settings() -> BankSyncSettings:
    """Reload settings from environment variables.

    Returns:
        BankSyncSettings: The reloaded configuration instance
    """
    clear_settings_cache()
    return get_settings()


def clear_settings_cache() -> None:
    """Forget the cached settings instance (used by tests)."""
    global _settings
    _settings = None


def get_database_path() -> Path:
    """Get the configured ledger database path."""
    return get_settings().database.path

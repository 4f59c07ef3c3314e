"""
Configuration Management for LedgerSync

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Each concern (remote service, sync policy, local store) gets its own
settings class with its own environment prefix, so a deployment can
override one area without touching the others.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RemoteSettings(BaseSettings):
    """Remote ledger service configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_API_",
        extra="ignore"
    )

    base_url: str = Field(
        default="",
        description="Base URL of the remote ledger service"
    )
    timeout_seconds: float = Field(
        default=15.0,
        gt=0,
        le=120,
        description="Per-request timeout"
    )
    read_retry_attempts: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Attempts for idempotent GET requests within one pull"
    )
    page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Page size for paginated transaction pulls (backend default is 50)"
    )

    @field_validator('base_url')
    @classmethod
    def strip_base_url(cls, v: str) -> str:
        """Whitespace and trailing slashes break endpoint joining."""
        return v.strip().rstrip("/")


class SyncSettings(BaseSettings):
    """Sync queue and scheduling policy."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        extra="ignore"
    )

    max_retries: int = Field(
        default=10,
        ge=0,
        description="Transient failures tolerated before a record is frozen as failed"
    )
    backoff_base: float = Field(
        default=2.0,
        gt=1.0,
        description="Base of the exponential retry backoff"
    )
    backoff_cap_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound for a single backoff delay"
    )
    interval_seconds: float = Field(
        default=60.0,
        ge=0,
        description="Periodic sync interval (0 = manual mode)"
    )
    request_channel_size: int = Field(
        default=8,
        ge=1,
        le=1024,
        description="Capacity of the drain request channel"
    )
    include_null_optionals: bool = Field(
        default=False,
        description="Send absent optional fields as explicit nulls"
    )
    balance_tolerance: float = Field(
        default=0.01,
        ge=0.0,
        le=1.0,
        description="Largest absolute posting sum still considered balanced"
    )

    @property
    def manual_mode(self) -> bool:
        """Periodic sync disabled."""
        return self.interval_seconds <= 0


class StoreSettings(BaseSettings):
    """Local ledger store configuration."""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_STORE_",
        extra="ignore"
    )

    database_path: str = Field(
        default="./data/ledger.db",
        description="Path to the SQLite database file"
    )

    @property
    def database_dir(self) -> Path:
        return Path(self.database_path).parent


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Environment
    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Root log level"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Note: These are loaded lazily to allow partial configuration

    @property
    def remote(self) -> RemoteSettings:
        return RemoteSettings()

    @property
    def sync(self) -> SyncSettings:
        return SyncSettings()

    @property
    def store(self) -> StoreSettings:
        return StoreSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Uses LRU cache to ensure settings are only loaded once.
    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("remote", "sync", "store", "app"):
        try:
            _ = getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    # A client without a backend URL can only work offline
    if results.get("remote") and not settings.remote.base_url:
        results["remote"] = False
        results["remote_error"] = "LEDGER_API_BASE_URL is not set"

    return results

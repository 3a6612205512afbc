"""
Configuration Management for Split Ledger

Every section is a pydantic-settings model read from `SPLITLEDGER_*`
environment variables (and `.env`), so a bad value fails at startup
rather than in the middle of a sweep.
"""

from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class StorageSettings(BaseSettings):
    """Storage backend configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPLITLEDGER_STORAGE_",
        extra="ignore"
    )

    backend: Literal["memory", "sql"] = Field(
        default="memory",
        description="Which storage backend to use"
    )
    database_url: str = Field(
        default="sqlite:///splitledger.db",
        description="SQLAlchemy database URL (sql backend only)"
    )
    echo: bool = Field(
        default=False,
        description="Log every SQL statement"
    )


class SchedulerSettings(BaseSettings):
    """Schedule executor configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPLITLEDGER_SCHEDULER_",
        extra="ignore"
    )

    claim_lease_seconds: int = Field(
        default=300,
        ge=1,
        description="How long a claimed occurrence stays reserved for one executor"
    )
    store_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        description="Upper bound on any single store call made by the executor"
    )
    batch_size: int = Field(
        default=10,
        ge=1,
        le=100,
        description="Due actions executed concurrently per batch"
    )
    max_catch_up_executions: int = Field(
        default=31,
        ge=1,
        description="Most missed occurrences one action may catch up in a single sweep"
    )
    history_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
        description="Default page size for execution history"
    )


class LedgerSettings(BaseSettings):
    """Ledger and reporting configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SPLITLEDGER_LEDGER_",
        extra="ignore"
    )

    default_currency: str = Field(
        default="GBP",
        min_length=1,
        max_length=10,
        description="Currency used when a report has nothing else to go on"
    )
    transactions_page_size: int = Field(
        default=50,
        ge=1,
        le=500,
    )
    scheduled_actions_page_size: int = Field(
        default=20,
        ge=1,
        le=500,
    )

    @field_validator("default_currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        return v.strip().upper()


class AppSettings(BaseSettings):
    """
    Process-wide settings: environment name, debug flag and log level.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

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
        description="Root log level for the stdlib logger behind structlog"
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {v}")
        return level


class Settings(BaseSettings):
    """All settings sections behind one object."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def storage(self) -> StorageSettings:
        return StorageSettings()

    @property
    def scheduler(self) -> SchedulerSettings:
        return SchedulerSettings()

    @property
    def ledger(self) -> LedgerSettings:
        return LedgerSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    The process-wide Settings instance.

    Tests that change the environment call `get_settings.cache_clear()`.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Build every section once and report which ones fail validation.

    Returns a dict of {setting_name: is_valid}, plus a
    `<setting_name>_error` entry for every section that failed.
    """
    results = {}

    settings = get_settings()

    for name in ("storage", "scheduler", "ledger", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results

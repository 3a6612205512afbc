"""Configuration package."""

from splitledger.config.settings import (
    AppSettings,
    LedgerSettings,
    SchedulerSettings,
    Settings,
    StorageSettings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "LedgerSettings",
    "SchedulerSettings",
    "Settings",
    "StorageSettings",
    "get_settings",
    "validate_all_settings",
]

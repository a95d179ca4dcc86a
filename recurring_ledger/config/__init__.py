"""Configuration package."""

from recurring_ledger.config.settings import (
    AppSettings,
    DatabaseSettings,
    EndTimePolicy,
    LedgerSettings,
    SchedulerSettings,
    Settings,
    get_settings,
    validate_all_settings,
)

__all__ = [
    "AppSettings",
    "DatabaseSettings",
    "EndTimePolicy",
    "LedgerSettings",
    "SchedulerSettings",
    "Settings",
    "get_settings",
    "validate_all_settings",
]

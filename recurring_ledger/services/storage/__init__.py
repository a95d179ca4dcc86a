"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Implements a SQLAlchemy backend (SQLite by default), designed to be swappable.
"""

from recurring_ledger.services.storage.interface import (
    AuditStorageInterface,
    ExchangeRateStore,
    LedgerStore,
    ScheduledRuleRepository,
    UnitOfWork,
)
from recurring_ledger.services.storage.database import (
    DEFAULT_CURRENCIES,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from recurring_ledger.services.storage.sql import (
    SqlAuditStorage,
    SqlExchangeRateStore,
    SqlLedgerStore,
    SqlScheduledRuleRepository,
    SqlUnitOfWork,
    claim_rule,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ExchangeRateStore",
    "LedgerStore",
    "ScheduledRuleRepository",
    "UnitOfWork",
    # Database setup
    "DEFAULT_CURRENCIES",
    "create_engine_from_settings",
    "create_session_factory",
    "init_db",
    # SQL implementation
    "SqlAuditStorage",
    "SqlExchangeRateStore",
    "SqlLedgerStore",
    "SqlScheduledRuleRepository",
    "SqlUnitOfWork",
    "claim_rule",
]

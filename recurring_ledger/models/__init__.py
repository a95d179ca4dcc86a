"""
Data Models Package

This package contains all Pydantic models used in the Recurring Ledger system.
All data flowing through the system must conform to these schemas.
"""

from recurring_ledger.models.ledger import (
    Account,
    AccountCategory,
    AccountLinkage,
    AccountUpdate,
    Category,
    CategoryKind,
    ExchangeRate,
    Frequency,
    OwnerSettings,
    RuleStatus,
    ScheduledRuleDraft,
    ScheduledRuleUpdate,
    ScheduledTransactionRule,
    SupportedCurrency,
    Transaction,
    TransactionType,
    TransactionUpdate,
    check_account_direction,
    ensure_utc,
    utc_now,
)
from recurring_ledger.models.scheduling import (
    RuleRunResult,
    RunOutcome,
    SchedulerStatus,
    StaleClaimResolution,
    TickReport,
)
from recurring_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Ledger models
    "Account",
    "AccountCategory",
    "AccountLinkage",
    "AccountUpdate",
    "Category",
    "CategoryKind",
    "ExchangeRate",
    "Frequency",
    "OwnerSettings",
    "RuleStatus",
    "ScheduledRuleDraft",
    "ScheduledRuleUpdate",
    "ScheduledTransactionRule",
    "SupportedCurrency",
    "Transaction",
    "TransactionType",
    "TransactionUpdate",
    "check_account_direction",
    "ensure_utc",
    "utc_now",
    # Scheduling results
    "RuleRunResult",
    "RunOutcome",
    "SchedulerStatus",
    "StaleClaimResolution",
    "TickReport",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]

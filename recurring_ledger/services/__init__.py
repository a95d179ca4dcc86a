"""
Services package.

Rule and ledger services (services.rules, services.ledger,
services.materializer) are imported from their modules directly; they
depend on the audit package, which in turn depends on storage.
"""

from recurring_ledger.services.currency import ConversionResult, CurrencyConverter
from recurring_ledger.services.errors import (
    AccountInUseError,
    ClaimLostError,
    CurrencyMismatchError,
    DanglingReferenceError,
    DuplicateError,
    LedgerError,
    LedgerValidationError,
    MissingExchangeRateError,
    NotFoundError,
    PermanentLedgerError,
    RuleValidationError,
    RuleConflictError,
    StorageError,
    TransientLedgerError,
)

__all__ = [
    # Currency
    "ConversionResult",
    "CurrencyConverter",
    # Errors
    "AccountInUseError",
    "ClaimLostError",
    "CurrencyMismatchError",
    "DanglingReferenceError",
    "DuplicateError",
    "LedgerError",
    "LedgerValidationError",
    "MissingExchangeRateError",
    "NotFoundError",
    "PermanentLedgerError",
    "RuleValidationError",
    "RuleConflictError",
    "StorageError",
    "TransientLedgerError",
]

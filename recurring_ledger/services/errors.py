"""
Ledger and Materialization Errors

The scheduler decides what to do with a failed rule purely from the
exception type:

- TransientLedgerError: leave the rule active and its cursor untouched;
  the next tick retries naturally.
- PermanentLedgerError: deactivate the rule and surface the reason to
  the owner. Never retried automatically.

Anything else reaching the scheduler is an unexpected failure: the claim
is released, the error recorded, and sibling rules keep running.
"""

from typing import Optional


class LedgerError(Exception):
    """Base exception for ledger operations."""

    code = "LedgerError"


class LedgerValidationError(LedgerError):
    """A request breaks a ledger rule and was rejected before any write."""

    code = "ValidationError"


class RuleValidationError(LedgerValidationError):
    """A recurring rule definition was rejected at creation/update time."""

    code = "RuleValidationError"

    def __init__(self, message: str, field: Optional[str] = None, issues: Optional[list] = None):
        self.field = field
        self.issues = issues or []
        super().__init__(message)


class NotFoundError(LedgerError):
    """Entity not found for this owner."""

    code = "NotFound"


class DuplicateError(LedgerError):
    """Attempted to insert a duplicate entity."""

    code = "Duplicate"


class AccountInUseError(LedgerValidationError):
    """Account cannot be removed while posted transactions reference it."""

    code = "AccountInUse"


class TransientLedgerError(LedgerError):
    """Condition an operator can fix; safe to retry on the next tick."""

    code = "Transient"


class PermanentLedgerError(LedgerError):
    """Condition that will not fix itself; the rule must stop firing."""

    code = "Permanent"


class MissingExchangeRateError(TransientLedgerError):
    """The owner has no rate configured for a currency a transfer needs."""

    code = "MissingExchangeRate"

    def __init__(self, owner_id: int, currency_code: str, message: Optional[str] = None):
        self.owner_id = owner_id
        self.currency_code = currency_code
        super().__init__(
            message or f"No exchange rate configured for {currency_code} (owner {owner_id})"
        )


class DanglingReferenceError(PermanentLedgerError):
    """A rule references an account or category that no longer exists."""

    code = "DanglingReference"

    def __init__(self, entity_type: str, entity_id: int):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(f"Referenced {entity_type} {entity_id} no longer exists")


class CurrencyMismatchError(PermanentLedgerError):
    """The amount's currency no longer matches the account it moves through."""

    code = "CurrencyMismatch"

    def __init__(self, account_id: int, expected: str, actual: str):
        self.account_id = account_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Account {account_id} holds {actual} but the amount is denominated in {expected}"
        )


class ClaimLostError(LedgerError):
    """The rule's claim was released or taken over before commit."""

    code = "ClaimLost"

    def __init__(self, rule_id: int):
        self.rule_id = rule_id
        super().__init__(f"Claim on rule {rule_id} is no longer held")


class RuleConflictError(LedgerError):
    """The rule changed between being read and being written back."""

    code = "RuleConflict"

    def __init__(self, rule_id: int, version: int):
        self.rule_id = rule_id
        self.version = version
        super().__init__(f"Rule {rule_id} is no longer at version {version}")


class StorageError(LedgerError):
    """Base exception for storage backend failures."""

    code = "StorageError"

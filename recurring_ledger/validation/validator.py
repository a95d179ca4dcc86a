"""
Two-Stage Validation Pipeline

DESIGN DECISION: Validation happens in two distinct stages:

STAGE 1 - SCHEMA VALIDATION (pydantic, at model construction):
- Type checking
- Required field presence
- Directional account invariant
- End date not before start date

STAGE 2 - SEMANTIC VALIDATION (here, against the store):
- Referenced accounts exist and belong to the owner
- Amount currency matches the account it moves through
- Category exists, belongs to the owner and fits the transaction type
- Amount fits the ledger scale

WHY TWO STAGES:
1. Separation of concerns (structural vs logical)
2. Better error messages (know exactly what kind of issue)
3. Stage 2 needs access to storage

IMPORTANT: Validation NEVER silently fixes issues.
A rule that fails here is rejected; it never reaches the scheduler.
"""

from decimal import Decimal
from typing import Optional, Union

from pydantic import BaseModel

from recurring_ledger.config import LedgerSettings, get_settings
from recurring_ledger.models.ledger import (
    CategoryKind,
    ScheduledRuleDraft,
    Transaction,
    TransactionType,
)
from recurring_ledger.services.errors import RuleValidationError
from recurring_ledger.services.storage import UnitOfWork


LedgerEntry = Union[ScheduledRuleDraft, Transaction]

# Category kind an entry of each type must use; transfers accept either
_CATEGORY_KIND_FOR = {
    TransactionType.EXPENSE: CategoryKind.EXPENSE,
    TransactionType.INCOME: CategoryKind.INCOME,
}


class ValidationIssue(BaseModel):
    """A single problem found during semantic validation."""

    field: str
    issue_type: str
    message: str


class RuleValidator:
    """
    Semantic checks for rules and manual transactions.

    Stage 1 already ran when the pydantic model was built; this class only
    answers questions that need the owner's accounts and categories.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def _check_account(
        self,
        uow: UnitOfWork,
        owner_id: int,
        account_id: Optional[int],
        field: str,
        currency_code: Optional[str],
    ) -> list[ValidationIssue]:
        if account_id is None:
            return []
        account = uow.ledger.get_account(account_id, owner_id=owner_id)
        if account is None:
            return [ValidationIssue(
                field=field,
                issue_type="not_found",
                message=f"Account {account_id} does not exist or belongs to another owner",
            )]
        if currency_code is not None and account.currency_code != currency_code:
            return [ValidationIssue(
                field="currency_code",
                issue_type="currency_mismatch",
                message=(
                    f"Amount is in {currency_code} but account '{account.name}' "
                    f"holds {account.currency_code}"
                ),
            )]
        return []

    def check(
        self,
        uow: UnitOfWork,
        owner_id: int,
        entry: LedgerEntry,
    ) -> list[ValidationIssue]:
        """
        Run every semantic check and return all issues found.

        An empty list means the entry may be stored.
        """
        issues: list[ValidationIssue] = []

        if uow.ledger.get_currency(entry.currency_code) is None:
            issues.append(ValidationIssue(
                field="currency_code",
                issue_type="unsupported",
                message=f"Currency {entry.currency_code} is not supported",
            ))

        # Scale check: no silent rounding of what the owner typed
        quantum = self._settings.amount_quantum
        if Decimal(entry.amount) != Decimal(entry.amount).quantize(quantum):
            issues.append(ValidationIssue(
                field="amount",
                issue_type="too_precise",
                message=(
                    f"Amount {entry.amount} has more than "
                    f"{self._settings.amount_scale} decimal places"
                ),
            ))

        # The amount's currency is that of the account it leaves (expense,
        # transfer) or enters (income)
        if entry.transaction_type == TransactionType.INCOME:
            issues += self._check_account(
                uow, owner_id, entry.destination_account_id,
                "destination_account_id", entry.currency_code,
            )
        else:
            issues += self._check_account(
                uow, owner_id, entry.source_account_id,
                "source_account_id", entry.currency_code,
            )
            issues += self._check_account(
                uow, owner_id, entry.destination_account_id,
                "destination_account_id", None,
            )

        if entry.category_id is not None:
            category = uow.ledger.get_category(entry.category_id, owner_id=owner_id)
            expected_kind = _CATEGORY_KIND_FOR.get(entry.transaction_type)
            if category is None:
                issues.append(ValidationIssue(
                    field="category_id",
                    issue_type="not_found",
                    message=f"Category {entry.category_id} does not exist",
                ))
            elif expected_kind is not None and category.kind != expected_kind:
                issues.append(ValidationIssue(
                    field="category_id",
                    issue_type="kind_mismatch",
                    message=(
                        f"Category '{category.name}' is an {category.kind.value} category "
                        f"and cannot be used for {entry.transaction_type.value}"
                    ),
                ))

        return issues

    def validate(self, uow: UnitOfWork, owner_id: int, entry: LedgerEntry) -> None:
        """
        Reject the entry if any semantic check fails.

        Raises:
            RuleValidationError: Carrying the first issue's message and field
        """
        issues = self.check(uow, owner_id, entry)
        if issues:
            first = issues[0]
            raise RuleValidationError(first.message, field=first.field, issues=issues)

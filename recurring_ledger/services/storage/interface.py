"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the same scheduler against SQLite in tests and a server database in production
2. Keep the claim protocol a storage concern, out of the scheduler
3. Keep business logic decoupled from storage implementation

Ledger repositories are synchronous and bound to one unit of work.
The scheduler runs them on worker threads. Audit storage is async
because it is called from the event loop.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

from recurring_ledger.models.audit import AuditEvent
from recurring_ledger.models.ledger import (
    Account,
    Category,
    ExchangeRate,
    OwnerSettings,
    ScheduledTransactionRule,
    SupportedCurrency,
    Transaction,
    TransactionType,
)
from recurring_ledger.models.scheduling import StaleClaimResolution


class ScheduledRuleRepository(ABC):
    """
    Persistence and claim protocol for recurring rules.

    A rule is claimed by atomically setting its claim token while no other
    token is present. Only the holder of the token may advance the rule's
    cursor or release it.
    """

    @abstractmethod
    def add(self, rule: ScheduledTransactionRule) -> ScheduledTransactionRule:
        """Insert a new rule and return it with its assigned id."""
        pass

    @abstractmethod
    def get(
        self,
        rule_id: int,
        owner_id: Optional[int] = None,
    ) -> Optional[ScheduledTransactionRule]:
        """
        Load a rule by id.

        Args:
            rule_id: The rule's identifier
            owner_id: When given, rules of other owners are not visible

        Returns:
            The rule if found, None otherwise
        """
        pass

    @abstractmethod
    def list_for_owner(
        self,
        owner_id: int,
        is_active: Optional[bool] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[ScheduledTransactionRule]:
        """Owner's rules ordered by (next_due, id)."""
        pass

    @abstractmethod
    def save_definition(self, rule: ScheduledTransactionRule) -> ScheduledTransactionRule:
        """
        Persist owner-editable fields of an existing rule.

        Claim and run-state fields (including is_active) are left
        untouched. The write only applies if the stored version still
        equals rule.version.

        Raises:
            NotFoundError: If the rule does not exist
            RuleConflictError: If the rule changed since it was read
        """
        pass

    @abstractmethod
    def set_active(
        self,
        rule_id: int,
        owner_id: int,
        is_active: bool,
        next_due: Optional[datetime] = None,
    ) -> Optional[ScheduledTransactionRule]:
        """Toggle a rule, optionally moving its cursor; None if not found."""
        pass

    @abstractmethod
    def delete(self, rule_id: int, owner_id: int) -> bool:
        """Delete a rule. Transactions it generated are kept."""
        pass

    @abstractmethod
    def fetch_due_rules(
        self,
        as_of: datetime,
        limit: Optional[int] = None,
    ) -> list[ScheduledTransactionRule]:
        """
        Active, unclaimed rules with next_due <= as_of, ordered by (next_due, id).
        """
        pass

    @abstractmethod
    def claim(self, rule_id: int, token: str, claimed_at: datetime) -> bool:
        """
        Try to take exclusive ownership of a due rule.

        Succeeds only if the rule is active, due at `claimed_at` and
        unclaimed.

        Returns:
            True if this caller now holds the claim
        """
        pass

    @abstractmethod
    def commit_advance(
        self,
        rule_id: int,
        token: str,
        next_due: Optional[datetime],
        is_active: bool,
        ran_at: datetime,
        release: bool = True,
    ) -> None:
        """
        Move the rule's cursor after an occurrence has been handled.

        Clears the rule's error state. With release=False the claim is kept
        so the caller can continue with the following occurrence.

        Raises:
            ClaimLostError: If `token` no longer holds the claim
        """
        pass

    @abstractmethod
    def release_claim(
        self,
        rule_id: int,
        token: str,
        error: Optional[str] = None,
        failed_at: Optional[datetime] = None,
        deactivate: bool = False,
        count_failure: bool = False,
    ) -> Optional[int]:
        """
        Give up a claim without advancing the cursor.

        Args:
            error: Reason recorded on the rule for the owner
            failed_at: When the error happened
            deactivate: Stop the rule from firing again
            count_failure: Increment consecutive_failures

        Returns:
            The rule's consecutive failure count, or None if the claim
            was no longer held
        """
        pass

    @abstractmethod
    def release_stale_claims(
        self,
        older_than: datetime,
        next_due_after: Callable[[ScheduledTransactionRule], Optional[datetime]],
    ) -> list[StaleClaimResolution]:
        """
        Recover claims left behind by a crashed worker.

        When the claimed occurrence already has a posted transaction, the
        cursor is advanced using `next_due_after`; otherwise the claim is
        simply cleared so the occurrence is retried.
        """
        pass


class LedgerStore(ABC):
    """Accounts, categories, currencies and posted transactions."""

    @abstractmethod
    def get_owner_settings(self, owner_id: int) -> OwnerSettings:
        """Stored settings, or defaults when the owner never saved any."""
        pass

    @abstractmethod
    def save_owner_settings(self, settings: OwnerSettings) -> OwnerSettings:
        pass

    @abstractmethod
    def get_currency(self, code: str) -> Optional[SupportedCurrency]:
        pass

    @abstractmethod
    def add_currency(self, currency: SupportedCurrency) -> SupportedCurrency:
        pass

    @abstractmethod
    def list_currencies(self) -> list[SupportedCurrency]:
        pass

    @abstractmethod
    def add_account(self, account: Account) -> Account:
        pass

    @abstractmethod
    def get_account(self, account_id: int, owner_id: Optional[int] = None) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(self, owner_id: int) -> list[Account]:
        pass

    @abstractmethod
    def update_account(self, account: Account) -> Account:
        """
        Persist name, type, category and currency of an existing account.

        The balance is only ever changed through apply_balance_delta.

        Raises:
            NotFoundError: If the account does not exist
            DuplicateError: If the new name is taken
        """
        pass

    @abstractmethod
    def delete_account(self, account_id: int, owner_id: int) -> bool:
        pass

    @abstractmethod
    def account_has_transactions(self, account_id: int) -> bool:
        pass

    @abstractmethod
    def apply_balance_delta(self, account_id: int, delta: Decimal) -> None:
        """Atomically add `delta` (possibly negative) to an account balance."""
        pass

    @abstractmethod
    def add_category(self, category: Category) -> Category:
        pass

    @abstractmethod
    def get_category(self, category_id: int, owner_id: Optional[int] = None) -> Optional[Category]:
        pass

    @abstractmethod
    def list_categories(self, owner_id: int) -> list[Category]:
        pass

    @abstractmethod
    def delete_category(self, category_id: int, owner_id: int) -> bool:
        """Delete a category; transactions that used it become uncategorized."""
        pass

    @abstractmethod
    def add_transaction(self, transaction: Transaction) -> Transaction:
        """
        Insert a transaction and return it with its id.

        Raises:
            DuplicateError: If the rule occurrence was already materialized
        """
        pass

    @abstractmethod
    def get_transaction(self, transaction_id: int, owner_id: int) -> Optional[Transaction]:
        pass

    @abstractmethod
    def list_transactions(
        self,
        owner_id: int,
        scheduled_rule_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        pass

    @abstractmethod
    def update_transaction(self, transaction: Transaction) -> Transaction:
        """
        Overwrite the editable fields of a posted transaction.

        The rule back-reference (scheduled_rule_id, occurrence_at) is kept.

        Raises:
            NotFoundError: If the transaction does not exist
        """
        pass

    @abstractmethod
    def delete_transaction(self, transaction_id: int, owner_id: int) -> bool:
        pass

    @abstractmethod
    def transaction_for_occurrence(
        self,
        scheduled_rule_id: int,
        occurrence_at: datetime,
    ) -> Optional[int]:
        """Id of the transaction generated for a rule occurrence, if any."""
        pass


class ExchangeRateStore(ABC):
    """
    Owner-specific exchange rates.

    A missing rate is a normal answer (None / absent key), never an error
    at this layer.
    """

    @abstractmethod
    def get_rate(self, owner_id: int, currency_code: str) -> Optional[Decimal]:
        pass

    @abstractmethod
    def get_rates(self, owner_id: int) -> dict[str, Decimal]:
        pass

    @abstractmethod
    def list_rates(self, owner_id: int) -> list[ExchangeRate]:
        pass

    @abstractmethod
    def set_rate(self, rate: ExchangeRate) -> ExchangeRate:
        """Insert or replace the owner's rate for a currency."""
        pass

    @abstractmethod
    def delete_rate(self, owner_id: int, currency_code: str) -> bool:
        pass


class UnitOfWork(ABC):
    """
    One atomic group of repository operations.

    Used as a context manager: commits when the block exits normally,
    rolls back when it raises.
    """

    rules: ScheduledRuleRepository
    ledger: LedgerStore
    rates: ExchangeRateStore

    def __enter__(self) -> "UnitOfWork":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.commit()
        else:
            self.rollback()

    @abstractmethod
    def commit(self) -> None:
        pass

    @abstractmethod
    def rollback(self) -> None:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one scheduler tick).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: int,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'rule', 'transaction')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

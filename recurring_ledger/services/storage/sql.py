"""
SQL Storage Implementation

Implements the storage interfaces on top of SQLAlchemy.

DESIGN DECISION: Claims are a single conditional UPDATE
("set claim_token where claim_token is null"), committed in its own short
transaction. The database's write serialization decides the winner, so two
schedulers (threads or processes) can race for the same rule and exactly
one of them gets rowcount == 1. Everything that happens afterwards for that
occurrence (transaction insert, balance updates, cursor advance) shares one
unit of work and commits or rolls back as a whole.

The unique (scheduled_rule_id, occurrence_at) constraint on transactions is
the last line of defence: even a broken claim cannot post an occurrence twice.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, exists, select, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
    wait_random_exponential,
)

from recurring_ledger.config import LedgerSettings, get_settings
from recurring_ledger.models.audit import AuditEvent, AuditEventType, AuditSeverity
from recurring_ledger.models.ledger import (
    Account,
    AccountCategory,
    Category,
    CategoryKind,
    ExchangeRate,
    OwnerSettings,
    ScheduledTransactionRule,
    SupportedCurrency,
    Transaction,
    TransactionType,
    utc_now,
)
from recurring_ledger.models.scheduling import StaleClaimResolution
from recurring_ledger.services.errors import (
    ClaimLostError,
    DuplicateError,
    NotFoundError,
    RuleConflictError,
    StorageError,
)
from recurring_ledger.services.storage.interface import (
    AuditStorageInterface,
    ExchangeRateStore,
    LedgerStore,
    ScheduledRuleRepository,
    UnitOfWork,
)
from recurring_ledger.services.storage.tables import (
    AccountORM,
    AuditEventORM,
    CategoryORM,
    CurrencyORM,
    ExchangeRateORM,
    OwnerSettingsORM,
    ScheduledRuleORM,
    TransactionORM,
)


logger = structlog.get_logger()


def _is_unique_violation(error: IntegrityError) -> bool:
    message = str(error.orig).lower()
    return "unique" in message or "duplicate" in message


class _Quantizer:
    """Rounds stored numerics back to the ledger's scale on read."""

    def __init__(self, settings: LedgerSettings):
        self._settings = settings

    def money(self, value) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value).quantize(self._settings.amount_quantum, rounding=self._settings.rounding)

    def rate(self, value) -> Optional[Decimal]:
        if value is None:
            return None
        return Decimal(value).quantize(self._settings.rate_quantum, rounding=self._settings.rounding)


# =============================================================================
# SCHEDULED RULES
# =============================================================================

class SqlScheduledRuleRepository(ScheduledRuleRepository):
    """Rule persistence and claim protocol over one SQLAlchemy session."""

    def __init__(self, session: Session, settings: Optional[LedgerSettings] = None):
        self._session = session
        self._q = _Quantizer(settings or get_settings().ledger)

    def _to_model(self, row: ScheduledRuleORM) -> ScheduledTransactionRule:
        return ScheduledTransactionRule(
            id=row.id,
            owner_id=row.owner_id,
            transaction_type=TransactionType(row.transaction_type),
            amount=self._q.money(row.amount),
            currency_code=row.currency_code,
            description=row.description,
            category_id=row.category_id,
            source_account_id=row.source_account_id,
            destination_account_id=row.destination_account_id,
            frequency=row.frequency,
            start_date=row.start_date,
            start_time=row.start_time,
            end_date=row.end_date,
            end_time=row.end_time,
            next_due=row.next_due,
            is_active=row.is_active,
            claim_token=row.claim_token,
            claimed_at=row.claimed_at,
            version=row.version,
            last_run_at=row.last_run_at,
            last_error=row.last_error,
            last_error_at=row.last_error_at,
            consecutive_failures=row.consecutive_failures,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def _select(self):
        # Bulk UPDATEs bypass the identity map, so reads always refresh
        return select(ScheduledRuleORM).execution_options(populate_existing=True)

    def _definition_values(self, rule: ScheduledTransactionRule) -> dict:
        return {
            "transaction_type": rule.transaction_type.value,
            "amount": rule.amount,
            "currency_code": rule.currency_code,
            "description": rule.description,
            "category_id": rule.category_id,
            "source_account_id": rule.source_account_id,
            "destination_account_id": rule.destination_account_id,
            "frequency": rule.frequency.value,
            "start_date": rule.start_date,
            "start_time": rule.start_time,
            "end_date": rule.end_date,
            "end_time": rule.end_time,
            "next_due": rule.next_due,
            "is_active": rule.is_active,
        }

    def add(self, rule: ScheduledTransactionRule) -> ScheduledTransactionRule:
        now = utc_now()
        row = ScheduledRuleORM(
            owner_id=rule.owner_id,
            version=0,
            consecutive_failures=0,
            created_at=now,
            updated_at=now,
            **self._definition_values(rule),
        )
        self._session.add(row)
        self._session.flush()
        return self._to_model(row)

    def get(
        self,
        rule_id: int,
        owner_id: Optional[int] = None,
    ) -> Optional[ScheduledTransactionRule]:
        stmt = self._select().where(ScheduledRuleORM.id == rule_id)
        if owner_id is not None:
            stmt = stmt.where(ScheduledRuleORM.owner_id == owner_id)
        row = self._session.scalars(stmt).first()
        return self._to_model(row) if row else None

    def list_for_owner(
        self,
        owner_id: int,
        is_active: Optional[bool] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[ScheduledTransactionRule]:
        stmt = self._select().where(ScheduledRuleORM.owner_id == owner_id)
        if is_active is not None:
            stmt = stmt.where(ScheduledRuleORM.is_active.is_(is_active))
        if transaction_type is not None:
            stmt = stmt.where(ScheduledRuleORM.transaction_type == transaction_type.value)
        stmt = stmt.order_by(ScheduledRuleORM.next_due, ScheduledRuleORM.id)
        return [self._to_model(row) for row in self._session.scalars(stmt)]

    def save_definition(self, rule: ScheduledTransactionRule) -> ScheduledTransactionRule:
        values = self._definition_values(rule)
        # is_active belongs to set_active and the scheduler
        del values["is_active"]

        result = self._session.execute(
            update(ScheduledRuleORM)
            .where(
                ScheduledRuleORM.id == rule.id,
                ScheduledRuleORM.owner_id == rule.owner_id,
                ScheduledRuleORM.version == rule.version,
            )
            .values(
                version=ScheduledRuleORM.version + 1,
                updated_at=utc_now(),
                **values,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            if self.get(rule.id, owner_id=rule.owner_id) is None:
                raise NotFoundError(f"Scheduled rule {rule.id} not found")
            raise RuleConflictError(rule.id, rule.version)
        return self.get(rule.id)

    def set_active(
        self,
        rule_id: int,
        owner_id: int,
        is_active: bool,
        next_due: Optional[datetime] = None,
    ) -> Optional[ScheduledTransactionRule]:
        values = {
            "is_active": is_active,
            "version": ScheduledRuleORM.version + 1,
            "updated_at": utc_now(),
        }
        if next_due is not None:
            values["next_due"] = next_due
        if is_active:
            values["consecutive_failures"] = 0
            values["last_error"] = None
            values["last_error_at"] = None

        result = self._session.execute(
            update(ScheduledRuleORM)
            .where(ScheduledRuleORM.id == rule_id, ScheduledRuleORM.owner_id == owner_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self.get(rule_id)

    def delete(self, rule_id: int, owner_id: int) -> bool:
        result = self._session.execute(
            delete(ScheduledRuleORM)
            .where(ScheduledRuleORM.id == rule_id, ScheduledRuleORM.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def fetch_due_rules(
        self,
        as_of: datetime,
        limit: Optional[int] = None,
    ) -> list[ScheduledTransactionRule]:
        stmt = (
            self._select()
            .where(
                ScheduledRuleORM.is_active.is_(True),
                ScheduledRuleORM.next_due <= as_of,
                ScheduledRuleORM.claim_token.is_(None),
            )
            .order_by(ScheduledRuleORM.next_due, ScheduledRuleORM.id)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return [self._to_model(row) for row in self._session.scalars(stmt)]

    def claim(self, rule_id: int, token: str, claimed_at: datetime) -> bool:
        result = self._session.execute(
            update(ScheduledRuleORM)
            .where(
                ScheduledRuleORM.id == rule_id,
                ScheduledRuleORM.claim_token.is_(None),
                ScheduledRuleORM.is_active.is_(True),
                ScheduledRuleORM.next_due <= claimed_at,
            )
            .values(
                claim_token=token,
                claimed_at=claimed_at,
                version=ScheduledRuleORM.version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def commit_advance(
        self,
        rule_id: int,
        token: str,
        next_due: Optional[datetime],
        is_active: bool,
        ran_at: datetime,
        release: bool = True,
    ) -> None:
        values = {
            "last_run_at": ran_at,
            "last_error": None,
            "last_error_at": None,
            "consecutive_failures": 0,
            "version": ScheduledRuleORM.version + 1,
            "updated_at": utc_now(),
        }
        if next_due is not None:
            values["next_due"] = next_due
        # Never re-activate: an owner may have paused the rule mid-run
        if not is_active:
            values["is_active"] = False
        if release:
            values["claim_token"] = None
            values["claimed_at"] = None

        result = self._session.execute(
            update(ScheduledRuleORM)
            .where(ScheduledRuleORM.id == rule_id, ScheduledRuleORM.claim_token == token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise ClaimLostError(rule_id)

    def release_claim(
        self,
        rule_id: int,
        token: str,
        error: Optional[str] = None,
        failed_at: Optional[datetime] = None,
        deactivate: bool = False,
        count_failure: bool = False,
    ) -> Optional[int]:
        values = {
            "claim_token": None,
            "claimed_at": None,
            "version": ScheduledRuleORM.version + 1,
            "updated_at": utc_now(),
        }
        if error is not None:
            values["last_error"] = error
            values["last_error_at"] = failed_at or utc_now()
        if deactivate:
            values["is_active"] = False
        if count_failure:
            values["consecutive_failures"] = ScheduledRuleORM.consecutive_failures + 1

        result = self._session.execute(
            update(ScheduledRuleORM)
            .where(ScheduledRuleORM.id == rule_id, ScheduledRuleORM.claim_token == token)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None
        return self._session.scalar(
            select(ScheduledRuleORM.consecutive_failures).where(ScheduledRuleORM.id == rule_id)
        )

    def release_stale_claims(
        self,
        older_than: datetime,
        next_due_after: Callable[[ScheduledTransactionRule], Optional[datetime]],
    ) -> list[StaleClaimResolution]:
        stale_rows = self._session.scalars(
            self._select().where(
                ScheduledRuleORM.claim_token.is_not(None),
                ScheduledRuleORM.claimed_at < older_than,
            )
        ).all()

        resolutions = []
        for row in stale_rows:
            rule = self._to_model(row)
            posted = self._session.scalar(
                select(
                    exists().where(
                        TransactionORM.scheduled_rule_id == rule.id,
                        TransactionORM.occurrence_at == rule.next_due,
                    )
                )
            )

            values = {
                "claim_token": None,
                "claimed_at": None,
                "version": ScheduledRuleORM.version + 1,
                "updated_at": utc_now(),
            }
            if posted:
                following = next_due_after(rule)
                if following is None:
                    values["is_active"] = False
                else:
                    values["next_due"] = following

            result = self._session.execute(
                update(ScheduledRuleORM)
                .where(
                    ScheduledRuleORM.id == rule.id,
                    ScheduledRuleORM.claim_token == rule.claim_token,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 1:
                resolutions.append(
                    StaleClaimResolution(
                        rule_id=rule.id,
                        claimed_at=rule.claimed_at,
                        advanced=bool(posted),
                    )
                )

        return resolutions


# =============================================================================
# LEDGER
# =============================================================================

class SqlLedgerStore(LedgerStore):
    """Accounts, categories, currencies and transactions over one session."""

    def __init__(self, session: Session, settings: Optional[LedgerSettings] = None):
        self._session = session
        self._settings = settings or get_settings().ledger
        self._q = _Quantizer(self._settings)

    # --- owner settings -----------------------------------------------------

    def get_owner_settings(self, owner_id: int) -> OwnerSettings:
        row = self._session.get(OwnerSettingsORM, owner_id)
        if row is None:
            return OwnerSettings(
                owner_id=owner_id,
                base_currency=self._settings.default_base_currency,
                timezone=self._settings.default_timezone,
            )
        return OwnerSettings(
            owner_id=row.owner_id,
            base_currency=row.base_currency,
            timezone=row.timezone,
        )

    def save_owner_settings(self, settings: OwnerSettings) -> OwnerSettings:
        row = self._session.get(OwnerSettingsORM, settings.owner_id)
        if row is None:
            row = OwnerSettingsORM(owner_id=settings.owner_id)
            self._session.add(row)
        row.base_currency = settings.base_currency
        row.timezone = settings.timezone
        self._session.flush()
        return settings

    # --- currencies ---------------------------------------------------------

    def get_currency(self, code: str) -> Optional[SupportedCurrency]:
        row = self._session.get(CurrencyORM, code.upper())
        if row is None:
            return None
        return SupportedCurrency(code=row.code, name=row.name, symbol=row.symbol)

    def add_currency(self, currency: SupportedCurrency) -> SupportedCurrency:
        if self._session.get(CurrencyORM, currency.code) is not None:
            raise DuplicateError(f"Currency {currency.code} already exists")
        self._session.add(
            CurrencyORM(code=currency.code, name=currency.name, symbol=currency.symbol)
        )
        self._session.flush()
        return currency

    def list_currencies(self) -> list[SupportedCurrency]:
        rows = self._session.scalars(select(CurrencyORM).order_by(CurrencyORM.code))
        return [SupportedCurrency(code=r.code, name=r.name, symbol=r.symbol) for r in rows]

    # --- accounts -----------------------------------------------------------

    def _account_to_model(self, row: AccountORM) -> Account:
        return Account(
            id=row.id,
            owner_id=row.owner_id,
            name=row.name,
            account_type=row.account_type,
            category=AccountCategory(row.category),
            currency_code=row.currency_code,
            current_balance=self._q.money(row.current_balance),
        )

    def add_account(self, account: Account) -> Account:
        row = AccountORM(
            owner_id=account.owner_id,
            name=account.name,
            account_type=account.account_type,
            category=account.category.value,
            currency_code=account.currency_code,
            current_balance=self._q.money(account.current_balance),
        )
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateError(f"Account '{account.name}' already exists") from e
            raise StorageError(f"Failed to save account: {e.orig}") from e
        return self._account_to_model(row)

    def get_account(self, account_id: int, owner_id: Optional[int] = None) -> Optional[Account]:
        stmt = (
            select(AccountORM)
            .where(AccountORM.id == account_id)
            .execution_options(populate_existing=True)
        )
        if owner_id is not None:
            stmt = stmt.where(AccountORM.owner_id == owner_id)
        row = self._session.scalars(stmt).first()
        return self._account_to_model(row) if row else None

    def list_accounts(self, owner_id: int) -> list[Account]:
        rows = self._session.scalars(
            select(AccountORM)
            .where(AccountORM.owner_id == owner_id)
            .order_by(AccountORM.id)
            .execution_options(populate_existing=True)
        )
        return [self._account_to_model(row) for row in rows]

    def update_account(self, account: Account) -> Account:
        try:
            result = self._session.execute(
                update(AccountORM)
                .where(AccountORM.id == account.id, AccountORM.owner_id == account.owner_id)
                .values(
                    name=account.name,
                    account_type=account.account_type,
                    category=account.category.value,
                    currency_code=account.currency_code,
                    updated_at=utc_now(),
                )
                .execution_options(synchronize_session=False)
            )
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateError(f"Account '{account.name}' already exists") from e
            raise StorageError(f"Failed to update account: {e.orig}") from e
        if result.rowcount != 1:
            raise NotFoundError(f"Account {account.id} not found")
        return self.get_account(account.id)

    def delete_account(self, account_id: int, owner_id: int) -> bool:
        result = self._session.execute(
            delete(AccountORM)
            .where(AccountORM.id == account_id, AccountORM.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def account_has_transactions(self, account_id: int) -> bool:
        return bool(
            self._session.scalar(
                select(
                    exists().where(
                        (TransactionORM.source_account_id == account_id)
                        | (TransactionORM.destination_account_id == account_id)
                    )
                )
            )
        )

    def apply_balance_delta(self, account_id: int, delta: Decimal) -> None:
        # Relative update: concurrent postings to one account cannot lose writes
        result = self._session.execute(
            update(AccountORM)
            .where(AccountORM.id == account_id)
            .values(
                current_balance=AccountORM.current_balance + delta,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Account {account_id} not found")

    # --- categories ---------------------------------------------------------

    def _category_to_model(self, row: CategoryORM) -> Category:
        return Category(id=row.id, owner_id=row.owner_id, name=row.name, kind=CategoryKind(row.kind))

    def add_category(self, category: Category) -> Category:
        row = CategoryORM(owner_id=category.owner_id, name=category.name, kind=category.kind.value)
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateError(
                    f"{category.kind.value.title()} category '{category.name}' already exists"
                ) from e
            raise StorageError(f"Failed to save category: {e.orig}") from e
        return self._category_to_model(row)

    def get_category(self, category_id: int, owner_id: Optional[int] = None) -> Optional[Category]:
        stmt = select(CategoryORM).where(CategoryORM.id == category_id)
        if owner_id is not None:
            stmt = stmt.where(CategoryORM.owner_id == owner_id)
        row = self._session.scalars(stmt).first()
        return self._category_to_model(row) if row else None

    def list_categories(self, owner_id: int) -> list[Category]:
        rows = self._session.scalars(
            select(CategoryORM).where(CategoryORM.owner_id == owner_id).order_by(CategoryORM.id)
        )
        return [self._category_to_model(row) for row in rows]

    def delete_category(self, category_id: int, owner_id: int) -> bool:
        self._session.execute(
            update(TransactionORM)
            .where(TransactionORM.category_id == category_id)
            .values(category_id=None)
            .execution_options(synchronize_session=False)
        )
        result = self._session.execute(
            delete(CategoryORM)
            .where(CategoryORM.id == category_id, CategoryORM.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # --- transactions -------------------------------------------------------

    def _transaction_to_model(self, row: TransactionORM) -> Transaction:
        return Transaction(
            id=row.id,
            owner_id=row.owner_id,
            transaction_type=TransactionType(row.transaction_type),
            amount=self._q.money(row.amount),
            currency_code=row.currency_code,
            transaction_date=row.transaction_date,
            category_id=row.category_id,
            source_account_id=row.source_account_id,
            destination_account_id=row.destination_account_id,
            destination_amount=self._q.money(row.destination_amount),
            exchange_rate=self._q.rate(row.exchange_rate),
            description=row.description,
            scheduled_rule_id=row.scheduled_rule_id,
            occurrence_at=row.occurrence_at,
            created_at=row.created_at,
        )

    def add_transaction(self, transaction: Transaction) -> Transaction:
        row = TransactionORM(
            owner_id=transaction.owner_id,
            transaction_type=transaction.transaction_type.value,
            amount=transaction.amount,
            currency_code=transaction.currency_code,
            transaction_date=transaction.transaction_date,
            category_id=transaction.category_id,
            source_account_id=transaction.source_account_id,
            destination_account_id=transaction.destination_account_id,
            destination_amount=transaction.destination_amount,
            exchange_rate=transaction.exchange_rate,
            description=transaction.description,
            scheduled_rule_id=transaction.scheduled_rule_id,
            occurrence_at=transaction.occurrence_at,
            created_at=transaction.created_at or utc_now(),
        )
        self._session.add(row)
        try:
            self._session.flush()
        except IntegrityError as e:
            if _is_unique_violation(e):
                raise DuplicateError(
                    f"Occurrence {transaction.occurrence_at} of rule "
                    f"{transaction.scheduled_rule_id} was already posted"
                ) from e
            raise StorageError(f"Failed to save transaction: {e.orig}") from e
        return self._transaction_to_model(row)

    def get_transaction(self, transaction_id: int, owner_id: int) -> Optional[Transaction]:
        row = self._session.scalars(
            select(TransactionORM).where(
                TransactionORM.id == transaction_id,
                TransactionORM.owner_id == owner_id,
            )
            .execution_options(populate_existing=True)
        ).first()
        return self._transaction_to_model(row) if row else None

    def list_transactions(
        self,
        owner_id: int,
        scheduled_rule_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        stmt = select(TransactionORM).where(TransactionORM.owner_id == owner_id)
        if scheduled_rule_id is not None:
            stmt = stmt.where(TransactionORM.scheduled_rule_id == scheduled_rule_id)
        if date_from is not None:
            stmt = stmt.where(TransactionORM.transaction_date >= date_from)
        if date_to is not None:
            stmt = stmt.where(TransactionORM.transaction_date <= date_to)
        stmt = stmt.order_by(TransactionORM.transaction_date, TransactionORM.id)
        return [self._transaction_to_model(row) for row in self._session.scalars(stmt)]

    def update_transaction(self, transaction: Transaction) -> Transaction:
        result = self._session.execute(
            update(TransactionORM)
            .where(
                TransactionORM.id == transaction.id,
                TransactionORM.owner_id == transaction.owner_id,
            )
            .values(
                transaction_type=transaction.transaction_type.value,
                amount=transaction.amount,
                currency_code=transaction.currency_code,
                transaction_date=transaction.transaction_date,
                category_id=transaction.category_id,
                source_account_id=transaction.source_account_id,
                destination_account_id=transaction.destination_account_id,
                destination_amount=transaction.destination_amount,
                exchange_rate=transaction.exchange_rate,
                description=transaction.description,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFoundError(f"Transaction {transaction.id} not found")
        return self.get_transaction(transaction.id, transaction.owner_id)

    def delete_transaction(self, transaction_id: int, owner_id: int) -> bool:
        result = self._session.execute(
            delete(TransactionORM)
            .where(TransactionORM.id == transaction_id, TransactionORM.owner_id == owner_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def transaction_for_occurrence(
        self,
        scheduled_rule_id: int,
        occurrence_at: datetime,
    ) -> Optional[int]:
        return self._session.scalar(
            select(TransactionORM.id).where(
                TransactionORM.scheduled_rule_id == scheduled_rule_id,
                TransactionORM.occurrence_at == occurrence_at,
            )
        )


# =============================================================================
# EXCHANGE RATES
# =============================================================================

class SqlExchangeRateStore(ExchangeRateStore):
    """Owner-specific rates over one session."""

    def __init__(self, session: Session, settings: Optional[LedgerSettings] = None):
        self._session = session
        self._q = _Quantizer(settings or get_settings().ledger)

    def _to_model(self, row: ExchangeRateORM) -> ExchangeRate:
        return ExchangeRate(
            owner_id=row.owner_id,
            currency_code=row.currency_code,
            rate_to_base=self._q.rate(row.rate_to_base),
            updated_at=row.updated_at,
        )

    def _row(self, owner_id: int, currency_code: str) -> Optional[ExchangeRateORM]:
        return self._session.scalars(
            select(ExchangeRateORM).where(
                ExchangeRateORM.owner_id == owner_id,
                ExchangeRateORM.currency_code == currency_code.upper(),
            )
        ).first()

    def get_rate(self, owner_id: int, currency_code: str) -> Optional[Decimal]:
        row = self._row(owner_id, currency_code)
        return self._q.rate(row.rate_to_base) if row else None

    def get_rates(self, owner_id: int) -> dict[str, Decimal]:
        return {rate.currency_code: rate.rate_to_base for rate in self.list_rates(owner_id)}

    def list_rates(self, owner_id: int) -> list[ExchangeRate]:
        rows = self._session.scalars(
            select(ExchangeRateORM)
            .where(ExchangeRateORM.owner_id == owner_id)
            .order_by(ExchangeRateORM.currency_code)
        )
        return [self._to_model(row) for row in rows]

    def set_rate(self, rate: ExchangeRate) -> ExchangeRate:
        row = self._row(rate.owner_id, rate.currency_code)
        if row is None:
            row = ExchangeRateORM(owner_id=rate.owner_id, currency_code=rate.currency_code)
            self._session.add(row)
        row.rate_to_base = self._q.rate(rate.rate_to_base)
        row.updated_at = utc_now()
        self._session.flush()
        return self._to_model(row)

    def delete_rate(self, owner_id: int, currency_code: str) -> bool:
        result = self._session.execute(
            delete(ExchangeRateORM)
            .where(
                ExchangeRateORM.owner_id == owner_id,
                ExchangeRateORM.currency_code == currency_code.upper(),
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


# =============================================================================
# UNIT OF WORK
# =============================================================================

class SqlUnitOfWork(UnitOfWork):
    """
    One session, one transaction.

    Usage:
        with SqlUnitOfWork(session_factory) as uow:
            uow.ledger.add_transaction(...)
            uow.rules.commit_advance(...)
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        settings: Optional[LedgerSettings] = None,
    ):
        self._session_factory = session_factory
        self._settings = settings or get_settings().ledger
        self.session: Optional[Session] = None

    def __enter__(self) -> "SqlUnitOfWork":
        self.session = self._session_factory()
        self.rules = SqlScheduledRuleRepository(self.session, self._settings)
        self.ledger = SqlLedgerStore(self.session, self._settings)
        self.rates = SqlExchangeRateStore(self.session, self._settings)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        try:
            super().__exit__(exc_type, exc, tb)
        finally:
            self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()


def claim_rule(
    uow_factory: Callable[[], UnitOfWork],
    rule_id: int,
    token: str,
    claimed_at: datetime,
    timeout_seconds: float,
) -> bool:
    """
    Claim a rule in its own short transaction.

    Lock contention (OperationalError) is retried with jittered backoff
    until `timeout_seconds` has passed, then re-raised so the caller can
    skip the rule for this tick.
    """
    retrying = Retrying(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_delay(timeout_seconds),
        wait=wait_random_exponential(multiplier=0.02, max=0.25),
        reraise=True,
    )
    for attempt in retrying:
        with attempt:
            with uow_factory() as uow:
                return uow.rules.claim(rule_id, token, claimed_at)
    return False


# =============================================================================
# AUDIT
# =============================================================================

class SqlAuditStorage(AuditStorageInterface):
    """
    Append-only audit log in the ledger database.

    Writes run on a worker thread so a busy database never stalls the
    scheduler's event loop.
    """

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def _to_model(self, row: AuditEventORM) -> AuditEvent:
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=row.timestamp,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            owner_id=row.owner_id,
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=row.details or {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    @retry(
        retry=retry_if_exception_type(OperationalError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
        reraise=True,
    )
    def _append(self, event: AuditEvent) -> None:
        with self._session_factory() as session:
            session.add(
                AuditEventORM(
                    event_id=str(event.event_id),
                    timestamp=event.timestamp,
                    event_type=event.event_type.value,
                    severity=event.severity.value,
                    owner_id=event.owner_id,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    correlation_id=str(event.correlation_id) if event.correlation_id else None,
                    description=event.description,
                    details=event.model_dump(mode="json")["details"],
                    error_code=event.error_code,
                    error_message=event.error_message,
                    is_user_action=event.is_user_action,
                )
            )
            session.commit()

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await asyncio.to_thread(self._append, event)
            return True
        except SQLAlchemyError as e:
            # Audit logging should not break the main flow
            logger.warning("audit_write_failed", error=str(e), event_id=str(event.event_id))
            return False

    def _query(self, stmt) -> list[AuditEvent]:
        try:
            with self._session_factory() as session:
                return [self._to_model(row) for row in session.scalars(stmt)]
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to get audit events: {e}") from e

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get events by correlation ID."""
        stmt = (
            select(AuditEventORM)
            .where(AuditEventORM.correlation_id == str(correlation_id))
            .order_by(AuditEventORM.timestamp, AuditEventORM.id)
        )
        return await asyncio.to_thread(self._query, stmt)

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: int,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        stmt = (
            select(AuditEventORM)
            .where(
                AuditEventORM.entity_type == entity_type,
                AuditEventORM.entity_id == entity_id,
            )
            .order_by(AuditEventORM.timestamp, AuditEventORM.id)
        )
        return await asyncio.to_thread(self._query, stmt)

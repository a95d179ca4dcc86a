"""
Core Ledger Models for Recurring Ledger

These models define the strict schemas for all data flowing through the system.
They are designed to:
1. Enforce the ledger invariants at construction time
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: The directional account invariant lives in a model
validator shared by Transaction and every rule model. A transaction or rule
that violates it cannot be constructed, so no code path (manual entry or
scheduler) can hand a malformed entry to the storage layer.
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes as UTC and normalize aware ones to UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class TransactionType(str, Enum):
    """Direction of money movement."""
    INCOME = "income"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class AccountCategory(str, Enum):
    """Balance sheet side of an account."""
    ASSET = "asset"
    LIABILITY = "liability"


class CategoryKind(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class Frequency(str, Enum):
    """
    Supported recurrence frequencies.

    ONCE fires a single time at start_date + start_time.
    """
    ONCE = "once"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


# =============================================================================
# SHARED VALIDATION
# =============================================================================

def check_account_direction(
    transaction_type: TransactionType,
    source_account_id: Optional[int],
    destination_account_id: Optional[int],
) -> None:
    """
    Enforce the directional account invariant.

    expense  -> source set, destination empty
    income   -> source empty, destination set
    transfer -> both set and different

    Raises:
        ValueError: If the pairing is invalid for the transaction type
    """
    if transaction_type == TransactionType.EXPENSE:
        if source_account_id is None or destination_account_id is not None:
            raise ValueError(
                "Expenses require a source account and no destination account"
            )
    elif transaction_type == TransactionType.INCOME:
        if source_account_id is not None or destination_account_id is None:
            raise ValueError(
                "Income requires a destination account and no source account"
            )
    elif transaction_type == TransactionType.TRANSFER:
        if source_account_id is None or destination_account_id is None:
            raise ValueError(
                "Transfers require both a source and a destination account"
            )
        if source_account_id == destination_account_id:
            raise ValueError(
                "Transfer source and destination accounts must be different"
            )


class CurrencyCodeMixin(BaseModel):
    """Normalizes `currency_code` to upper-case ISO form."""

    @field_validator('currency_code', mode='before', check_fields=False)
    @classmethod
    def normalize_currency_code(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class AccountLinkage(BaseModel):
    """
    Base for anything that moves money between accounts.

    Subclasses get the directional invariant checked on construction
    and on every assignment.
    """
    model_config = ConfigDict(validate_assignment=True)

    transaction_type: TransactionType
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None

    @model_validator(mode='after')
    def validate_account_direction(self):
        check_account_direction(
            self.transaction_type,
            self.source_account_id,
            self.destination_account_id,
        )
        return self


# =============================================================================
# REFERENCE DATA
# =============================================================================

class SupportedCurrency(BaseModel):
    """Immutable ISO currency reference row."""
    model_config = ConfigDict(frozen=True, str_strip_whitespace=True)

    code: str = Field(..., pattern="^[A-Z]{3}$")
    name: str = Field(..., min_length=1, max_length=100)
    symbol: str = Field(..., min_length=1, max_length=10)

    @field_validator('code', mode='before')
    @classmethod
    def normalize_code(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


class OwnerSettings(BaseModel):
    """
    Per-owner ledger preferences.

    The base currency is the implicit rate = 1 reference for the owner's
    exchange rates. The timezone is the single zone all of the owner's
    recurrence rules are evaluated in.
    """
    owner_id: int
    base_currency: str = Field(default="USD", pattern="^[A-Z]{3}$")
    timezone: str = Field(default="UTC")

    @field_validator('base_currency', mode='before')
    @classmethod
    def normalize_base_currency(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator('timezone')
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown time zone: {v}")
        return v

    @property
    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


# =============================================================================
# LEDGER ENTITIES
# =============================================================================

class Account(CurrencyCodeMixin):
    """
    A balance-carrying account owned by one user.

    current_balance is always expressed in currency_code.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[int] = None
    owner_id: int
    name: str = Field(..., min_length=1, max_length=100)
    account_type: str = Field(
        default="general",
        min_length=1,
        max_length=50,
        description="Name from the owner's account-type taxonomy"
    )
    category: AccountCategory = AccountCategory.ASSET
    currency_code: str = Field(..., pattern="^[A-Z]{3}$")
    current_balance: Decimal = Field(default=Decimal("0"))


class Category(BaseModel):
    """Income or expense classification, unique per (owner, name, kind)."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: Optional[int] = None
    owner_id: int
    name: str = Field(..., min_length=1, max_length=100)
    kind: CategoryKind


class ExchangeRate(CurrencyCodeMixin):
    """
    Owner-specific rate for a non-base currency.

    rate_to_base is the number of base-currency units one unit of
    currency_code is worth. The base currency itself is never stored.
    """
    owner_id: int
    currency_code: str = Field(..., pattern="^[A-Z]{3}$")
    rate_to_base: Decimal = Field(..., gt=0)
    updated_at: Optional[datetime] = None


class Transaction(AccountLinkage, CurrencyCodeMixin):
    """
    A posted ledger transaction.

    amount is denominated in currency_code, which is always the currency of
    the account the amount is taken from (source for expenses and transfers)
    or credited to (destination for income). For cross-currency transfers
    destination_amount holds the derived credit in the destination
    account's currency.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: Optional[int] = None
    owner_id: int
    amount: Decimal = Field(..., gt=0)
    currency_code: str = Field(..., pattern="^[A-Z]{3}$")
    transaction_date: date
    category_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)

    # Cross-currency transfer details
    destination_amount: Optional[Decimal] = Field(default=None, gt=0)
    exchange_rate: Optional[Decimal] = Field(default=None, gt=0)

    # Back-reference to the rule occurrence that produced this transaction
    scheduled_rule_id: Optional[int] = None
    occurrence_at: Optional[datetime] = None

    created_at: Optional[datetime] = None

    @field_validator('occurrence_at', 'created_at')
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @model_validator(mode='after')
    def validate_transfer_fields(self) -> 'Transaction':
        if self.transaction_type != TransactionType.TRANSFER:
            if self.destination_amount is not None or self.exchange_rate is not None:
                raise ValueError(
                    "Only transfers can carry a converted destination amount"
                )
        if (self.scheduled_rule_id is None) != (self.occurrence_at is None):
            raise ValueError(
                "scheduled_rule_id and occurrence_at must be set together"
            )
        return self

    @property
    def credited_amount(self) -> Decimal:
        """Amount credited to the destination, in its own currency."""
        return self.destination_amount if self.destination_amount is not None else self.amount


class TransactionUpdate(CurrencyCodeMixin):
    """
    Partial edit of a posted transaction.

    Only fields that are explicitly set are applied. Conversion details are
    always recomputed, never edited directly.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    transaction_type: Optional[TransactionType] = None
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency_code: Optional[str] = Field(default=None, pattern="^[A-Z]{3}$")
    transaction_date: Optional[date] = None
    category_id: Optional[int] = None
    source_account_id: Optional[int] = None
    destination_account_id: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=500)


class AccountUpdate(CurrencyCodeMixin):
    """Partial edit of an account's descriptive fields and currency."""
    model_config = ConfigDict(str_strip_whitespace=True)

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    account_type: Optional[str] = Field(default=None, min_length=1, max_length=50)
    category: Optional[AccountCategory] = None
    currency_code: Optional[str] = Field(default=None, pattern="^[A-Z]{3}$")


# =============================================================================
# RECURRENCE RULES
# =============================================================================

class RuleSchedule(BaseModel):
    """Date/time window fields shared by rule drafts and stored rules."""

    frequency: Frequency
    start_date: date
    start_time: time = Field(default=time(9, 0))
    end_date: Optional[date] = None
    end_time: Optional[time] = None

    @model_validator(mode='after')
    def validate_window(self):
        if self.end_date is not None and self.end_date < self.start_date:
            raise ValueError("End date cannot be before start date")
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("End time must be after start time")
        return self


class ScheduledRuleDraft(AccountLinkage, RuleSchedule, CurrencyCodeMixin):
    """
    What an owner submits to create a recurring rule.

    Schema-level checks happen here; checks that need the store
    (account ownership, currencies, category kinds) live in RuleValidator.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    amount: Decimal = Field(..., gt=0)
    currency_code: str = Field(..., pattern="^[A-Z]{3}$")
    description: str = Field(..., min_length=1, max_length=500)
    category_id: Optional[int] = None


class ScheduledRuleUpdate(BaseModel):
    """
    Partial update for an existing rule.

    Only fields that are explicitly set are applied.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    amount: Optional[Decimal] = Field(default=None, gt=0)
    currency_code: Optional[str] = Field(default=None, pattern="^[A-Z]{3}$")
    category_id: Optional[int] = None
    frequency: Optional[Frequency] = None
    start_date: Optional[date] = None
    start_time: Optional[time] = None
    end_date: Optional[date] = None
    end_time: Optional[time] = None

    @field_validator('currency_code', mode='before')
    @classmethod
    def normalize_currency_code(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @property
    def reschedules(self) -> bool:
        """Changing any of these fields recomputes next_due."""
        return bool({"frequency", "start_date", "start_time"} & self.model_fields_set)


class ScheduledTransactionRule(ScheduledRuleDraft):
    """
    A persisted recurrence rule and its execution cursor.

    next_due is the instant of the next occurrence that has not been
    materialized yet. The claim fields are owned by the repository.
    """

    id: Optional[int] = None
    owner_id: int
    next_due: datetime
    is_active: bool = True

    # Claim bookkeeping
    claim_token: Optional[str] = None
    claimed_at: Optional[datetime] = None
    version: int = 0

    # Owner-visible run state
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = Field(default=0, ge=0)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator(
        'next_due', 'claimed_at', 'last_run_at', 'last_error_at',
        'created_at', 'updated_at',
    )
    @classmethod
    def normalize_timestamps(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_claimed(self) -> bool:
        return self.claim_token is not None


class RuleStatus(BaseModel):
    """What an owner sees about a rule's health."""

    rule_id: int
    is_active: bool
    frequency: Frequency
    next_due: datetime
    last_run_at: Optional[datetime] = None
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    consecutive_failures: int = 0
    upcoming: list[datetime] = Field(default_factory=list)

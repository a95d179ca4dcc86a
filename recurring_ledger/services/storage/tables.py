"""
SQLAlchemy table declarations for the ledger.

Only schema lives here: tables, columns, constraints and the indexes the
scheduler's access paths depend on. Conversion to and from the pydantic
models happens in the SQL repositories.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Time,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator


# Money columns keep more places than the ledger scale; rounding to the
# ledger scale happens in Python before anything is written.
MONEY = Numeric(20, 8)
RATE = Numeric(24, 12)

ACCOUNT_DIRECTION_CHECK = (
    "(transaction_type = 'expense' AND source_account_id IS NOT NULL "
    "AND destination_account_id IS NULL) OR "
    "(transaction_type = 'income' AND source_account_id IS NULL "
    "AND destination_account_id IS NOT NULL) OR "
    "(transaction_type = 'transfer' AND source_account_id IS NOT NULL "
    "AND destination_account_id IS NOT NULL "
    "AND source_account_id <> destination_account_id)"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UTCDateTime(TypeDecorator):
    """
    Timestamp stored as naive UTC, returned as aware UTC.

    SQLite has no time zone support, so everything is normalized to UTC
    on the way in and tagged as UTC on the way out.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.replace(tzinfo=None)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    pass


class OwnerSettingsORM(Base):
    __tablename__ = "owner_settings"

    owner_id = Column(Integer, primary_key=True)
    base_currency = Column(String(3), nullable=False, default="USD")
    timezone = Column(String(64), nullable=False, default="UTC")
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)


class CurrencyORM(Base):
    __tablename__ = "supported_currencies"

    code = Column(String(3), primary_key=True)
    name = Column(String(100), nullable=False)
    symbol = Column(String(10), nullable=False)


class AccountORM(Base):
    __tablename__ = "accounts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    account_type = Column(String(50), nullable=False, default="general")
    category = Column(String(20), nullable=False, default="asset")
    currency_code = Column(String(3), ForeignKey("supported_currencies.code"), nullable=False)
    current_balance = Column(MONEY, nullable=False, default=0)
    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "name", name="uq_accounts_owner_name"),
        CheckConstraint("category IN ('asset', 'liability')", name="ck_accounts_category"),
    )


class CategoryORM(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    kind = Column(String(10), nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "name", "kind", name="uq_categories_owner_name_kind"),
        CheckConstraint("kind IN ('income', 'expense')", name="ck_categories_kind"),
    )


class ExchangeRateORM(Base):
    __tablename__ = "exchange_rates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    currency_code = Column(String(3), ForeignKey("supported_currencies.code"), nullable=False)
    rate_to_base = Column(RATE, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("owner_id", "currency_code", name="uq_exchange_rates_owner_currency"),
        CheckConstraint("rate_to_base > 0", name="ck_exchange_rates_positive"),
    )


class TransactionORM(Base):
    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)
    transaction_type = Column(String(10), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency_code = Column(String(3), nullable=False)
    transaction_date = Column(Date, nullable=False)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True)
    source_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, index=True)
    destination_account_id = Column(Integer, ForeignKey("accounts.id"), nullable=True, index=True)
    destination_amount = Column(MONEY, nullable=True)
    exchange_rate = Column(RATE, nullable=True)
    description = Column(Text, nullable=True)
    # Non-owning reference: generated transactions outlive their rule
    scheduled_rule_id = Column(Integer, nullable=True)
    occurrence_at = Column(UTCDateTime, nullable=True)
    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
        CheckConstraint(ACCOUNT_DIRECTION_CHECK, name="ck_transactions_accounts"),
        UniqueConstraint(
            "scheduled_rule_id", "occurrence_at", name="uq_transactions_rule_occurrence"
        ),
        Index("ix_transactions_owner_date", "owner_id", "transaction_date"),
        Index("ix_transactions_owner_currency", "owner_id", "currency_code"),
    )


class ScheduledRuleORM(Base):
    __tablename__ = "scheduled_transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(Integer, nullable=False)

    transaction_type = Column(String(10), nullable=False)
    amount = Column(MONEY, nullable=False)
    currency_code = Column(String(3), nullable=False, default="USD")
    description = Column(Text, nullable=False)
    category_id = Column(Integer, nullable=True)
    # Plain integers: a deleted account must leave the rule in place so the
    # scheduler can deactivate it with a visible reason
    source_account_id = Column(Integer, nullable=True, index=True)
    destination_account_id = Column(Integer, nullable=True, index=True)

    frequency = Column(String(10), nullable=False)
    start_date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_date = Column(Date, nullable=True)
    end_time = Column(Time, nullable=True)
    next_due = Column(UTCDateTime, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(UTCDateTime, nullable=True)
    version = Column(Integer, nullable=False, default=0)

    last_run_at = Column(UTCDateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(UTCDateTime, nullable=True)
    consecutive_failures = Column(Integer, nullable=False, default=0)

    created_at = Column(UTCDateTime, default=_utcnow, nullable=False)
    updated_at = Column(UTCDateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_scheduled_amount_positive"),
        CheckConstraint(ACCOUNT_DIRECTION_CHECK, name="ck_scheduled_accounts"),
        CheckConstraint("end_date IS NULL OR end_date >= start_date", name="ck_scheduled_end_date"),
        CheckConstraint(
            "frequency IN ('once', 'daily', 'weekly', 'monthly')", name="ck_scheduled_frequency"
        ),
        # Scheduler sweep and per-owner listing
        Index("ix_scheduled_active_next_due", "is_active", "next_due"),
        Index("ix_scheduled_owner_active_next_due", "owner_id", "is_active", "next_due"),
    )


class AuditEventORM(Base):
    __tablename__ = "audit_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(36), nullable=False, unique=True)
    timestamp = Column(UTCDateTime, nullable=False)
    event_type = Column(String(50), nullable=False)
    severity = Column(String(10), nullable=False)
    owner_id = Column(Integer, nullable=True)
    entity_type = Column(String(30), nullable=True)
    entity_id = Column(Integer, nullable=True)
    correlation_id = Column(String(36), nullable=True, index=True)
    description = Column(String(500), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    error_code = Column(String(50), nullable=True)
    error_message = Column(Text, nullable=True)
    is_user_action = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
    )

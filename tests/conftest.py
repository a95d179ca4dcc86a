"""
Shared fixtures.

Every test gets its own file-backed SQLite database under tmp_path.
A file (not :memory:) is used because worker threads open their own
connections and must all see the same data.
"""

from datetime import date, datetime, time, timezone
from decimal import Decimal

import pytest

from recurring_ledger.audit import AuditLogger
from recurring_ledger.config import (
    DatabaseSettings,
    EndTimePolicy,
    LedgerSettings,
    SchedulerSettings,
)
from recurring_ledger.models.ledger import (
    Account,
    Frequency,
    ScheduledTransactionRule,
    TransactionType,
)
from recurring_ledger.scheduler import SchedulerLoop
from recurring_ledger.services.currency import CurrencyConverter
from recurring_ledger.services.ledger import LedgerPoster, LedgerService
from recurring_ledger.services.materializer import TransactionMaterializer
from recurring_ledger.services.recurrence import first_occurrence
from recurring_ledger.services.storage import (
    SqlAuditStorage,
    SqlUnitOfWork,
    create_engine_from_settings,
    create_session_factory,
    init_db,
)
from recurring_ledger.validation import RuleValidator


OWNER = 1
OTHER_OWNER = 2


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def ledger_settings():
    return LedgerSettings(
        default_base_currency="USD",
        default_timezone="UTC",
        amount_scale=2,
        rate_scale=10,
        rounding="ROUND_HALF_EVEN",
        conversion_tolerance=Decimal("0.01"),
    )


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(
        tick_interval_seconds=1,
        claim_timeout_seconds=5.0,
        stale_claim_grace_seconds=300,
        max_concurrency=4,
        max_occurrences_per_rule=31,
        missing_rate_alert_threshold=3,
        end_time_policy=EndTimePolicy.ANNOTATE,
    )


@pytest.fixture
def engine(tmp_path):
    engine = create_engine_from_settings(
        DatabaseSettings(url=f"sqlite:///{tmp_path / 'ledger.db'}", echo=False)
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def uow_factory(session_factory, ledger_settings):
    def factory():
        return SqlUnitOfWork(session_factory, ledger_settings)
    return factory


@pytest.fixture
def audit_storage(session_factory):
    return SqlAuditStorage(session_factory)


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def poster(ledger_settings):
    return LedgerPoster(CurrencyConverter(ledger_settings))


@pytest.fixture
def validator(ledger_settings):
    return RuleValidator(ledger_settings)


@pytest.fixture
def make_scheduler(uow_factory, poster, audit_logger, scheduler_settings):
    def _make(settings=None):
        return SchedulerLoop(
            uow_factory,
            TransactionMaterializer(poster),
            audit_logger=audit_logger,
            settings=settings or scheduler_settings,
        )
    return _make


@pytest.fixture
def scheduler(make_scheduler):
    return make_scheduler()


@pytest.fixture
def ledger_service(uow_factory, poster, validator, audit_logger):
    return LedgerService(uow_factory, poster=poster, validator=validator, audit_logger=audit_logger)


@pytest.fixture
def make_account(uow_factory):
    """Insert an account directly through the store."""
    def _make(name="Checking", currency_code="USD", balance="1000.00", owner_id=OWNER):
        with uow_factory() as uow:
            return uow.ledger.add_account(
                Account(
                    owner_id=owner_id,
                    name=name,
                    currency_code=currency_code,
                    current_balance=Decimal(balance),
                )
            )
    return _make


@pytest.fixture
def make_rule(uow_factory):
    """Insert a rule directly, bypassing semantic validation."""
    def _make(**overrides):
        fields = dict(
            owner_id=OWNER,
            transaction_type=TransactionType.EXPENSE,
            amount=Decimal("100.00"),
            currency_code="USD",
            description="Rent",
            frequency=Frequency.MONTHLY,
            start_date=date(2025, 1, 31),
            start_time=time(9, 0),
        )
        fields.update(overrides)
        if "next_due" not in fields:
            seed = ScheduledTransactionRule(next_due=utc(2000, 1, 1), **fields)
            fields["next_due"] = first_occurrence(seed)
        with uow_factory() as uow:
            return uow.rules.add(ScheduledTransactionRule(**fields))
    return _make


@pytest.fixture
def get_account(uow_factory):
    def _get(account_id):
        with uow_factory() as uow:
            return uow.ledger.get_account(account_id)
    return _get


@pytest.fixture
def get_rule(uow_factory):
    def _get(rule_id):
        with uow_factory() as uow:
            return uow.rules.get(rule_id)
    return _get


@pytest.fixture
def list_transactions(uow_factory):
    def _list(owner_id=OWNER, rule_id=None):
        with uow_factory() as uow:
            return uow.ledger.list_transactions(owner_id, scheduled_rule_id=rule_id)
    return _list

"""
Tests for Recurring Ledger models

Test strategy:
1. Unit tests for schema-level invariants (no database)
2. Storage-backed behaviour lives in the repository/ledger/scheduler tests
"""

import pytest
from datetime import date, datetime, time, timezone
from decimal import Decimal
from uuid import uuid4

from pydantic import ValidationError

from recurring_ledger.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)
from recurring_ledger.models.ledger import (
    Account,
    ExchangeRate,
    Frequency,
    OwnerSettings,
    ScheduledRuleDraft,
    ScheduledRuleUpdate,
    ScheduledTransactionRule,
    Transaction,
    TransactionType,
)
from recurring_ledger.models.scheduling import RuleRunResult, RunOutcome, TickReport


def _draft(**overrides) -> ScheduledRuleDraft:
    fields = dict(
        transaction_type=TransactionType.EXPENSE,
        source_account_id=1,
        amount=Decimal("50.00"),
        currency_code="USD",
        description="Gym",
        frequency=Frequency.MONTHLY,
        start_date=date(2025, 1, 1),
    )
    fields.update(overrides)
    return ScheduledRuleDraft(**fields)


class TestAccountDirection:
    """Tests for the directional account invariant."""

    def test_expense_requires_source_only(self):
        """Test an expense with a source and no destination is accepted."""
        draft = _draft()
        assert draft.source_account_id == 1
        assert draft.destination_account_id is None

    def test_expense_with_destination_rejected(self):
        """Test an expense that also names a destination is rejected."""
        with pytest.raises(ValidationError):
            _draft(destination_account_id=2)

    def test_income_requires_destination_only(self):
        """Test income must credit a destination and have no source."""
        draft = _draft(
            transaction_type=TransactionType.INCOME,
            source_account_id=None,
            destination_account_id=3,
        )
        assert draft.destination_account_id == 3

        with pytest.raises(ValidationError):
            _draft(transaction_type=TransactionType.INCOME, destination_account_id=3)

    def test_transfer_requires_two_different_accounts(self):
        """Test transfers need both accounts and they must differ."""
        _draft(transaction_type=TransactionType.TRANSFER, destination_account_id=2)

        with pytest.raises(ValidationError):
            _draft(transaction_type=TransactionType.TRANSFER)
        with pytest.raises(ValidationError):
            _draft(transaction_type=TransactionType.TRANSFER, destination_account_id=1)

    def test_invariant_checked_on_assignment(self):
        """Test changing the type after construction is re-validated."""
        draft = _draft()
        with pytest.raises(ValidationError):
            draft.transaction_type = TransactionType.INCOME


class TestRuleModels:
    """Tests for rule drafts, updates and stored rules."""

    def test_currency_code_normalized(self):
        """Test currency codes are upper-cased and stripped."""
        assert _draft(currency_code=" usd ").currency_code == "USD"

    def test_amount_must_be_positive(self):
        """Test zero and negative amounts are rejected."""
        with pytest.raises(ValidationError):
            _draft(amount=Decimal("0"))
        with pytest.raises(ValidationError):
            _draft(amount=Decimal("-5"))

    def test_end_date_before_start_rejected(self):
        """Test end_date earlier than start_date is rejected."""
        with pytest.raises(ValidationError):
            _draft(start_date=date(2025, 3, 1), end_date=date(2025, 2, 28))

    def test_end_date_equal_to_start_allowed(self):
        """Test a rule may end on the day it starts."""
        draft = _draft(start_date=date(2025, 3, 1), end_date=date(2025, 3, 1))
        assert draft.end_date == draft.start_date

    def test_end_time_must_follow_start_time(self):
        """Test end_time at or before start_time is rejected."""
        with pytest.raises(ValidationError):
            _draft(start_time=time(9, 0), end_time=time(9, 0))
        draft = _draft(start_time=time(9, 0), end_time=time(17, 0))
        assert draft.end_time == time(17, 0)

    def test_default_start_time(self):
        """Test rules default to 09:00."""
        assert _draft().start_time == time(9, 0)

    def test_stored_rule_normalizes_timestamps_to_utc(self):
        """Test naive next_due is read as UTC and aware values are converted."""
        naive = ScheduledTransactionRule(
            **_draft().model_dump(),
            owner_id=1,
            next_due=datetime(2025, 1, 1, 9, 0),
        )
        assert naive.next_due.tzinfo is not None
        assert naive.next_due.utcoffset().total_seconds() == 0
        assert naive.is_claimed is False

    def test_update_reschedules_only_for_schedule_fields(self):
        """Test only frequency/start changes recompute next_due."""
        assert ScheduledRuleUpdate(amount=Decimal("10")).reschedules is False
        assert ScheduledRuleUpdate(end_date=date(2026, 1, 1)).reschedules is False
        assert ScheduledRuleUpdate(frequency=Frequency.WEEKLY).reschedules is True
        assert ScheduledRuleUpdate(start_time=time(8, 0)).reschedules is True

    def test_update_tracks_explicitly_set_fields(self):
        """Test unset fields are not applied by an update."""
        update = ScheduledRuleUpdate(description="New name", currency_code="eur")
        assert update.model_dump(exclude_unset=True) == {
            "description": "New name",
            "currency_code": "EUR",
        }


class TestLedgerModels:
    """Tests for accounts, rates, settings and transactions."""

    def test_account_defaults(self):
        """Test account creation with defaults."""
        account = Account(owner_id=1, name="  Wallet ", currency_code="eur")
        assert account.name == "Wallet"
        assert account.currency_code == "EUR"
        assert account.current_balance == Decimal("0")

    def test_exchange_rate_must_be_positive(self):
        """Test a zero rate is rejected."""
        with pytest.raises(ValidationError):
            ExchangeRate(owner_id=1, currency_code="EUR", rate_to_base=Decimal("0"))

    def test_owner_settings_rejects_unknown_zone(self):
        """Test unknown IANA zone names are rejected."""
        with pytest.raises(ValidationError):
            OwnerSettings(owner_id=1, timezone="Mars/Olympus_Mons")
        assert OwnerSettings(owner_id=1, timezone="America/New_York").zone.key == "America/New_York"

    def test_only_transfers_carry_destination_amount(self):
        """Test conversion fields are rejected on expenses."""
        with pytest.raises(ValidationError):
            Transaction(
                owner_id=1,
                transaction_type=TransactionType.EXPENSE,
                source_account_id=1,
                amount=Decimal("10"),
                currency_code="USD",
                transaction_date=date(2025, 1, 1),
                destination_amount=Decimal("9"),
            )

    def test_rule_reference_needs_occurrence(self):
        """Test scheduled_rule_id and occurrence_at come as a pair."""
        with pytest.raises(ValidationError):
            Transaction(
                owner_id=1,
                transaction_type=TransactionType.EXPENSE,
                source_account_id=1,
                amount=Decimal("10"),
                currency_code="USD",
                transaction_date=date(2025, 1, 1),
                scheduled_rule_id=7,
            )

    def test_credited_amount(self):
        """Test credited_amount prefers the converted destination amount."""
        transfer = Transaction(
            owner_id=1,
            transaction_type=TransactionType.TRANSFER,
            source_account_id=1,
            destination_account_id=2,
            amount=Decimal("100.00"),
            currency_code="USD",
            transaction_date=date(2025, 1, 1),
            destination_amount=Decimal("92.00"),
            exchange_rate=Decimal("0.92"),
        )
        assert transfer.credited_amount == Decimal("92.00")

        same_currency = transfer.model_copy(update={"destination_amount": None, "exchange_rate": None})
        assert same_currency.credited_amount == Decimal("100.00")


class TestAuditModels:
    """Tests for audit models."""

    def test_audit_event_creation(self):
        """Test AuditEvent creation."""
        event = AuditEvent(
            event_type=AuditEventType.RULE_CREATED,
            description="Test event",
            entity_type="rule",
            entity_id=4,
        )
        assert event.event_type == AuditEventType.RULE_CREATED
        assert event.severity == AuditSeverity.INFO
        assert event.event_id is not None

    def test_audit_event_to_log_dict(self):
        """Test conversion to log dictionary."""
        correlation_id = uuid4()
        event = AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description="Test error",
            correlation_id=correlation_id,
        )
        log_dict = event.to_log_dict()

        assert log_dict["event_type"] == "system_error"
        assert log_dict["severity"] == "error"
        assert log_dict["correlation_id"] == str(correlation_id)

    def test_audit_builder_rule_created(self):
        """Test AuditEventBuilder.rule_created."""
        next_due = datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc)
        event = AuditEventBuilder.rule_created(5, 1, "monthly", next_due)

        assert event.event_type == AuditEventType.RULE_CREATED
        assert event.entity_id == 5
        assert event.details["next_due"] == next_due.isoformat()
        assert event.is_user_action is True

    def test_audit_builder_missing_rate_escalates(self):
        """Test repeated missing-rate events are errors with their own type."""
        first = AuditEventBuilder.missing_exchange_rate(5, 1, "no rate", 1, repeated=False)
        repeated = AuditEventBuilder.missing_exchange_rate(5, 1, "no rate", 3, repeated=True)

        assert first.event_type == AuditEventType.MISSING_EXCHANGE_RATE
        assert first.severity == AuditSeverity.WARNING
        assert repeated.event_type == AuditEventType.MISSING_RATE_REPEATED
        assert repeated.severity == AuditSeverity.ERROR
        assert repeated.details["consecutive_failures"] == 3


class TestTickReport:
    """Tests for scheduler result models."""

    def test_summary_counts_outcomes(self):
        """Test summary aggregates outcomes and created transactions."""
        now = datetime(2025, 1, 1, tzinfo=timezone.utc)
        report = TickReport(
            as_of=now,
            started_at=now,
            due_count=3,
            results=[
                RuleRunResult(rule_id=1, owner_id=1, outcome=RunOutcome.MATERIALIZED, transaction_ids=[10, 11]),
                RuleRunResult(rule_id=2, owner_id=1, outcome=RunOutcome.DEFERRED),
                RuleRunResult(rule_id=3, owner_id=2, outcome=RunOutcome.EXHAUSTED, transaction_ids=[12]),
            ],
        )
        summary = report.summary()

        assert summary["transactions_created"] == 3
        assert summary["materialized"] == 1
        assert summary["deferred"] == 1
        assert summary["failed"] == 0
        assert report.result_for(2).succeeded is False
        assert report.result_for(3).succeeded is True
        assert report.result_for(99) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])

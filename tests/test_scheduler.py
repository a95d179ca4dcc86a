"""
Tests for the scheduler loop.

Every tick is given an explicit as_of so the scenarios read as a timeline.
"""

import asyncio

import pytest
from datetime import date, time
from decimal import Decimal

from recurring_ledger.config import EndTimePolicy
from recurring_ledger.models.audit import AuditEventType
from recurring_ledger.models.ledger import (
    ExchangeRate,
    Frequency,
    OwnerSettings,
    Transaction,
    TransactionType,
)
from recurring_ledger.models.scheduling import RunOutcome
from recurring_ledger.scheduler import SchedulerLoop
from recurring_ledger.services.errors import DuplicateError
from recurring_ledger.services.materializer import TransactionMaterializer

from conftest import OWNER, utc


@pytest.fixture
def checking(make_account):
    return make_account()


class TestMaterialization:
    """Due rules become transactions."""

    @pytest.mark.asyncio
    async def test_due_rule_posts_once(self, scheduler, make_rule, checking, get_rule, get_account, list_transactions):
        """Test a due monthly rule posts one transaction and advances."""
        rule = make_rule(source_account_id=checking.id)
        report = await scheduler.tick(utc(2025, 2, 1))

        result = report.result_for(rule.id)
        assert result.outcome == RunOutcome.MATERIALIZED
        assert result.occurrences_posted == 1
        assert report.transactions_created == 1

        [posted] = list_transactions(rule_id=rule.id)
        assert posted.occurrence_at == utc(2025, 1, 31, 9, 0)
        assert posted.transaction_date == date(2025, 1, 31)
        assert posted.description == "Rent"

        stored = get_rule(rule.id)
        assert stored.next_due == utc(2025, 2, 28, 9, 0)
        assert stored.claim_token is None
        assert stored.last_run_at == utc(2025, 2, 1)
        assert get_account(checking.id).current_balance == Decimal("900.00")

    @pytest.mark.asyncio
    async def test_future_rule_not_touched(self, scheduler, make_rule, checking):
        """Test rules whose next_due is after as_of are not due."""
        make_rule(source_account_id=checking.id)
        report = await scheduler.tick(utc(2025, 1, 31, 8, 59))
        assert report.due_count == 0
        assert report.results == []

    @pytest.mark.asyncio
    async def test_repeated_tick_is_idempotent(self, scheduler, make_rule, checking, list_transactions):
        """Test ticking twice at the same instant posts nothing new."""
        rule = make_rule(source_account_id=checking.id)
        await scheduler.tick(utc(2025, 2, 1))
        second = await scheduler.tick(utc(2025, 2, 1))

        assert second.due_count == 0
        assert len(list_transactions(rule_id=rule.id)) == 1

    @pytest.mark.asyncio
    async def test_income_in_owner_zone(self, scheduler, uow_factory, make_rule, checking, get_rule, get_account, list_transactions):
        """Test a late-evening local rule is dated on its local day."""
        with uow_factory() as uow:
            uow.ledger.save_owner_settings(OwnerSettings(owner_id=OWNER, timezone="America/New_York"))
        rule = make_rule(
            transaction_type=TransactionType.INCOME,
            destination_account_id=checking.id,
            frequency=Frequency.DAILY,
            start_date=date(2025, 1, 1),
            start_time=time(23, 30),
            next_due=utc(2025, 1, 2, 4, 30),
            description="Tips",
        )
        await scheduler.tick(utc(2025, 1, 2, 5, 0))

        [posted] = list_transactions(rule_id=rule.id)
        assert posted.transaction_date == date(2025, 1, 1)
        assert get_rule(rule.id).next_due == utc(2025, 1, 3, 4, 30)
        assert get_account(checking.id).current_balance == Decimal("1100.00")

    @pytest.mark.asyncio
    async def test_tick_events_share_correlation_id(self, scheduler, make_rule, checking, audit_storage):
        """Test every event of a tick carries the tick's correlation id."""
        make_rule(source_account_id=checking.id)
        report = await scheduler.tick(utc(2025, 2, 1))

        events = await audit_storage.get_events_by_correlation_id(report.correlation_id)
        types = [e.event_type for e in events]
        assert AuditEventType.OCCURRENCE_MATERIALIZED in types
        assert AuditEventType.TICK_COMPLETED in types


class TestCatchUp:
    """Rules that are behind, and rules that run out."""

    @pytest.mark.asyncio
    async def test_weekly_rule_exhausts_at_end_date(self, scheduler, make_rule, checking, get_rule, list_transactions, audit_storage):
        """Test a weekly rule ending Jan 10 posts Jan 1 and Jan 8 then stops."""
        rule = make_rule(
            source_account_id=checking.id,
            frequency=Frequency.WEEKLY,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 10),
        )
        report = await scheduler.tick(utc(2025, 1, 20))

        result = report.result_for(rule.id)
        assert result.outcome == RunOutcome.EXHAUSTED
        assert result.occurrences_posted == 2
        assert [t.transaction_date for t in list_transactions(rule_id=rule.id)] == [
            date(2025, 1, 1),
            date(2025, 1, 8),
        ]

        stored = get_rule(rule.id)
        assert stored.is_active is False
        assert stored.claim_token is None

        events = await audit_storage.get_events_by_entity("rule", rule.id)
        assert events[-1].event_type == AuditEventType.RULE_EXHAUSTED

        later = await scheduler.tick(utc(2025, 3, 1))
        assert later.due_count == 0

    @pytest.mark.asyncio
    async def test_once_rule(self, scheduler, make_rule, checking, get_rule):
        """Test a one-time rule posts once and deactivates."""
        rule = make_rule(source_account_id=checking.id, frequency=Frequency.ONCE)
        report = await scheduler.tick(utc(2025, 6, 1))

        assert report.result_for(rule.id).outcome == RunOutcome.EXHAUSTED
        assert report.transactions_created == 1
        assert get_rule(rule.id).is_active is False

    @pytest.mark.asyncio
    async def test_catch_up_is_bounded_per_tick(self, make_scheduler, scheduler_settings, make_rule, checking, get_rule, list_transactions):
        """Test a rule far behind catches up across several ticks."""
        scheduler = make_scheduler(scheduler_settings.model_copy(update={"max_occurrences_per_rule": 5}))
        rule = make_rule(source_account_id=checking.id, frequency=Frequency.DAILY, start_date=date(2025, 1, 1))
        as_of = utc(2025, 1, 8, 9, 0)

        first = await scheduler.tick(as_of)
        assert first.result_for(rule.id).occurrences_posted == 5
        assert get_rule(rule.id).next_due == utc(2025, 1, 6, 9, 0)
        assert get_rule(rule.id).claim_token is None

        second = await scheduler.tick(as_of)
        assert second.result_for(rule.id).occurrences_posted == 3
        assert get_rule(rule.id).next_due == utc(2025, 1, 9, 9, 0)
        assert len(list_transactions(rule_id=rule.id)) == 8

    @pytest.mark.asyncio
    async def test_end_date_moved_before_cursor(self, scheduler, make_rule, checking, get_rule, list_transactions):
        """Test a cursor already past the end date exhausts without posting."""
        rule = make_rule(
            source_account_id=checking.id,
            frequency=Frequency.DAILY,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 1, 5),
            next_due=utc(2025, 1, 6, 9, 0),
        )
        report = await scheduler.tick(utc(2025, 1, 7))

        assert report.result_for(rule.id).outcome == RunOutcome.EXHAUSTED
        assert list_transactions(rule_id=rule.id) == []
        assert get_rule(rule.id).is_active is False

    @pytest.mark.asyncio
    async def test_enforced_window_skips_late_occurrence(self, make_scheduler, scheduler_settings, make_rule, checking, get_rule, list_transactions):
        """Test ENFORCE_WINDOW skips an occurrence reached after end_time."""
        scheduler = make_scheduler(
            scheduler_settings.model_copy(update={"end_time_policy": EndTimePolicy.ENFORCE_WINDOW})
        )
        rule = make_rule(
            source_account_id=checking.id,
            frequency=Frequency.DAILY,
            start_date=date(2025, 1, 1),
            end_time=time(10, 0),
        )
        report = await scheduler.tick(utc(2025, 1, 1, 12, 0))

        result = report.result_for(rule.id)
        assert result.outcome == RunOutcome.SKIPPED
        assert result.occurrences_skipped == 1
        assert list_transactions(rule_id=rule.id) == []
        assert get_rule(rule.id).next_due == utc(2025, 1, 2, 9, 0)

    @pytest.mark.asyncio
    async def test_already_posted_occurrence_is_not_reposted(self, scheduler, uow_factory, make_rule, checking, get_rule, get_account, list_transactions):
        """Test an occurrence already in the ledger only advances the cursor."""
        rule = make_rule(source_account_id=checking.id)
        with uow_factory() as uow:
            uow.ledger.add_transaction(
                Transaction(
                    owner_id=OWNER,
                    transaction_type=TransactionType.EXPENSE,
                    source_account_id=checking.id,
                    amount=Decimal("100.00"),
                    currency_code="USD",
                    transaction_date=date(2025, 1, 31),
                    scheduled_rule_id=rule.id,
                    occurrence_at=rule.next_due,
                )
            )

        report = await scheduler.tick(utc(2025, 2, 1))

        assert report.result_for(rule.id).outcome == RunOutcome.SKIPPED
        assert len(list_transactions(rule_id=rule.id)) == 1
        assert get_rule(rule.id).next_due == utc(2025, 2, 28, 9, 0)
        assert get_account(checking.id).current_balance == Decimal("1000.00")


class TestFailures:
    """Transient and permanent materialization failures."""

    @pytest.mark.asyncio
    async def test_missing_rate_defers_and_escalates(self, scheduler, uow_factory, make_rule, make_account, checking, get_rule, get_account, audit_storage):
        """Test a missing rate keeps the cursor, counts failures and recovers."""
        pounds = make_account(name="Pounds", currency_code="GBP", balance="0")
        rule = make_rule(
            transaction_type=TransactionType.TRANSFER,
            source_account_id=checking.id,
            destination_account_id=pounds.id,
            description="Savings sweep",
        )
        as_of = utc(2025, 2, 1)

        for attempt in (1, 2, 3):
            report = await scheduler.tick(as_of)
            result = report.result_for(rule.id)
            assert result.outcome == RunOutcome.DEFERRED
            assert result.consecutive_failures == attempt

        stored = get_rule(rule.id)
        assert stored.is_active is True
        assert stored.next_due == utc(2025, 1, 31, 9, 0)
        assert stored.last_error.startswith("MissingExchangeRate")
        assert get_account(checking.id).current_balance == Decimal("1000.00")

        events = await audit_storage.get_events_by_entity("rule", rule.id)
        assert [e.event_type for e in events] == [
            AuditEventType.MISSING_EXCHANGE_RATE,
            AuditEventType.MISSING_EXCHANGE_RATE,
            AuditEventType.MISSING_RATE_REPEATED,
        ]

        with uow_factory() as uow:
            uow.rates.set_rate(ExchangeRate(owner_id=OWNER, currency_code="GBP", rate_to_base=Decimal("1.25")))

        report = await scheduler.tick(as_of)
        assert report.result_for(rule.id).outcome == RunOutcome.MATERIALIZED
        assert get_rule(rule.id).consecutive_failures == 0
        assert get_account(pounds.id).current_balance == Decimal("80.00")

    @pytest.mark.asyncio
    async def test_dangling_account_deactivates(self, scheduler, uow_factory, make_rule, make_account, get_rule, list_transactions, audit_storage):
        """Test a rule whose account was deleted is deactivated with a reason."""
        spare = make_account(name="Spare")
        rule = make_rule(source_account_id=spare.id)
        with uow_factory() as uow:
            uow.ledger.delete_account(spare.id, OWNER)

        report = await scheduler.tick(utc(2025, 2, 1))

        assert report.result_for(rule.id).outcome == RunOutcome.DEACTIVATED
        stored = get_rule(rule.id)
        assert stored.is_active is False
        assert stored.claim_token is None
        assert "DanglingReference" in stored.last_error
        assert list_transactions(rule_id=rule.id) == []

        [event] = await audit_storage.get_events_by_entity("rule", rule.id)
        assert event.event_type == AuditEventType.DANGLING_REFERENCE

    @pytest.mark.asyncio
    async def test_currency_mismatch_deactivates(self, scheduler, make_rule, checking, get_rule, get_account):
        """Test a rule whose currency no longer matches its account stops."""
        rule = make_rule(source_account_id=checking.id, currency_code="EUR")
        report = await scheduler.tick(utc(2025, 2, 1))

        assert report.result_for(rule.id).error_code == "CurrencyMismatch"
        assert get_rule(rule.id).is_active is False
        assert get_account(checking.id).current_balance == Decimal("1000.00")

    @pytest.mark.asyncio
    async def test_failing_rule_does_not_block_siblings(self, scheduler, uow_factory, make_rule, make_account, checking, list_transactions):
        """Test one broken rule leaves the others in the same tick alone."""
        spare = make_account(name="Spare")
        broken = make_rule(source_account_id=spare.id, description="Broken")
        healthy = make_rule(source_account_id=checking.id, description="Healthy")
        with uow_factory() as uow:
            uow.ledger.delete_account(spare.id, OWNER)

        report = await scheduler.tick(utc(2025, 2, 1))

        assert report.result_for(broken.id).outcome == RunOutcome.DEACTIVATED
        assert report.result_for(healthy.id).outcome == RunOutcome.MATERIALIZED
        assert len(list_transactions(rule_id=healthy.id)) == 1

    @pytest.mark.asyncio
    async def test_paused_rule_is_skipped(self, scheduler, uow_factory, make_rule, checking, list_transactions):
        """Test a deactivated rule is not picked up by the next tick."""
        rule = make_rule(source_account_id=checking.id)
        with uow_factory() as uow:
            uow.rules.set_active(rule.id, OWNER, False)

        report = await scheduler.tick(utc(2025, 2, 1))

        assert report.due_count == 0
        assert list_transactions(rule_id=rule.id) == []

    @pytest.mark.asyncio
    async def test_rule_deleted_while_resolving_duplicate(self, uow_factory, poster, audit_logger, scheduler_settings, make_rule, checking, get_rule):
        """Test a duplicate occurrence on a rule deleted mid-run ends the run cleanly."""

        class DeletingMaterializer(TransactionMaterializer):
            def materialize(self, uow, rule, occurrence_at, tz=None):
                with uow_factory() as other:
                    other.rules.delete(rule.id, rule.owner_id)
                raise DuplicateError("already posted")

        rule = make_rule(source_account_id=checking.id)
        scheduler = SchedulerLoop(
            uow_factory,
            DeletingMaterializer(poster),
            audit_logger=audit_logger,
            settings=scheduler_settings,
        )

        report = await scheduler.tick(utc(2025, 2, 1))

        result = report.result_for(rule.id)
        assert result.outcome == RunOutcome.INACTIVE
        assert result.is_active is False
        assert get_rule(rule.id) is None


class TestConcurrency:
    """Overlapping sweeps and abandoned claims."""

    @pytest.mark.asyncio
    async def test_overlapping_ticks_post_each_occurrence_once(self, make_scheduler, make_rule, checking, list_transactions, get_account):
        """Test two schedulers sweeping at once never double-post."""
        rules = [
            make_rule(
                source_account_id=checking.id,
                frequency=Frequency.DAILY,
                start_date=date(2025, 1, 1),
                amount=Decimal("1.00"),
                description=f"Daily {n}",
            )
            for n in range(5)
        ]
        as_of = utc(2025, 1, 3, 9, 0)

        first, second = await asyncio.gather(
            make_scheduler().tick(as_of),
            make_scheduler().tick(as_of),
        )

        assert first.transactions_created + second.transactions_created == 15
        for rule in rules:
            assert len(list_transactions(rule_id=rule.id)) == 3
        assert get_account(checking.id).current_balance == Decimal("985.00")

    @pytest.mark.asyncio
    async def test_stale_claim_is_recovered(self, scheduler, uow_factory, make_rule, checking, get_rule):
        """Test a claim left by a crashed sweep is released and the rule runs."""
        rule = make_rule(source_account_id=checking.id)
        with uow_factory() as uow:
            assert uow.rules.claim(rule.id, "crashed", utc(2025, 2, 1, 0, 0))

        report = await scheduler.tick(utc(2025, 2, 1, 2, 0))

        assert [(s.rule_id, s.advanced) for s in report.stale_claims] == [(rule.id, False)]
        assert report.result_for(rule.id).outcome == RunOutcome.MATERIALIZED
        assert get_rule(rule.id).next_due == utc(2025, 2, 28, 9, 0)

    @pytest.mark.asyncio
    async def test_fresh_claim_is_respected(self, scheduler, uow_factory, make_rule, checking, list_transactions):
        """Test a claim held by a live sweep is not stolen."""
        rule = make_rule(source_account_id=checking.id)
        with uow_factory() as uow:
            uow.rules.claim(rule.id, "busy", utc(2025, 2, 1, 1, 59))

        report = await scheduler.tick(utc(2025, 2, 1, 2, 0))

        assert report.stale_claims == []
        assert report.due_count == 0
        assert list_transactions(rule_id=rule.id) == []


class TestLifecycle:
    """run_forever / stop / status."""

    @pytest.mark.asyncio
    async def test_run_forever_until_stopped(self, scheduler):
        """Test the loop ticks, reports status and exits on stop()."""
        assert scheduler.status().is_running is False

        task = asyncio.create_task(scheduler.run_forever())
        for _ in range(200):
            await asyncio.sleep(0.01)
            if scheduler.status().ticks_completed:
                break

        running = scheduler.status()
        assert running.is_running is True
        assert running.ticks_completed >= 1
        assert running.last_tick_summary["due_count"] == 0

        scheduler.stop()
        await asyncio.wait_for(task, timeout=5)

        stopped = scheduler.status()
        assert stopped.is_running is False
        assert stopped.started_at is not None

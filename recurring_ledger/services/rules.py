"""
Scheduled Rule Management

Owner-facing operations on recurring rules: create, edit, pause, resume,
delete, list and inspect. The scheduler never calls this module; it only
reads what these operations stored.

DESIGN DECISION: A rule's first next_due is its start instant, even when
that lies in the past. The scheduler then catches up on the missed
occurrences. Resuming a paused rule, in contrast, does NOT backfill: the
cursor jumps to the first occurrence after the moment of resumption.
"""

import asyncio
from datetime import datetime
from typing import Callable, Optional

from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from recurring_ledger.audit import AuditLogger
from recurring_ledger.models.ledger import (
    RuleStatus,
    ScheduledRuleDraft,
    ScheduledRuleUpdate,
    ScheduledTransactionRule,
    TransactionType,
    utc_now,
)
from recurring_ledger.services.errors import (
    NotFoundError,
    RuleConflictError,
    RuleValidationError,
)
from recurring_ledger.services.recurrence import (
    compute_next_occurrence,
    first_occurrence,
    resolve_zone,
    upcoming_occurrences,
)
from recurring_ledger.services.storage import UnitOfWork
from recurring_ledger.validation import RuleValidator


class ScheduledRuleService:
    """
    CRUD and status for recurring rules.

    Args:
        uow_factory: Creates a fresh unit of work per operation
        validator: Semantic validation against the owner's ledger
        audit_logger: Receives one event per owner action
        clock: Source of "now"; injectable for tests
        preview_limit: Number of upcoming occurrences in get_rule_status
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        validator: Optional[RuleValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
        clock: Callable[[], datetime] = utc_now,
        preview_limit: int = 5,
    ):
        self._uow_factory = uow_factory
        self._validator = validator or RuleValidator()
        self._audit = audit_logger or AuditLogger()
        self._clock = clock
        self._preview_limit = preview_limit

    async def _run(self, work):
        def unit():
            with self._uow_factory() as uow:
                return work(uow)
        return await asyncio.to_thread(unit)

    def _load(self, uow: UnitOfWork, owner_id: int, rule_id: int) -> ScheduledTransactionRule:
        rule = uow.rules.get(rule_id, owner_id=owner_id)
        if rule is None:
            raise NotFoundError(f"Scheduled rule {rule_id} not found")
        return rule

    def _next_after_now(
        self,
        rule: ScheduledTransactionRule,
        uow: UnitOfWork,
        now: datetime,
    ) -> datetime:
        """First occurrence at or after `now`, for rescheduling and resuming."""
        tz = resolve_zone(uow.ledger.get_owner_settings(rule.owner_id).timezone)
        first = first_occurrence(rule, tz)
        if first >= now:
            return first
        following = compute_next_occurrence(rule, now, tz)
        if following is None:
            raise RuleValidationError(
                "Rule has no occurrences left after this date", field="end_date"
            )
        return following

    async def create_rule(
        self,
        owner_id: int,
        draft: ScheduledRuleDraft,
    ) -> ScheduledTransactionRule:
        """
        Validate and store a new rule.

        Raises:
            RuleValidationError: Accounts, currency or category don't fit
        """
        def work(uow: UnitOfWork) -> ScheduledTransactionRule:
            self._validator.validate(uow, owner_id, draft)
            tz = resolve_zone(uow.ledger.get_owner_settings(owner_id).timezone)
            rule = ScheduledTransactionRule(
                **draft.model_dump(),
                owner_id=owner_id,
                next_due=first_occurrence(draft, tz),
            )
            return uow.rules.add(rule)

        rule = await self._run(work)
        await self._audit.log_rule_created(
            rule_id=rule.id,
            owner_id=owner_id,
            frequency=rule.frequency.value,
            next_due=rule.next_due,
        )
        return rule

    @retry(
        retry=retry_if_exception_type(RuleConflictError),
        stop=stop_after_attempt(3),
        wait=wait_random_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )
    async def _apply_update(
        self,
        owner_id: int,
        rule_id: int,
        changes: ScheduledRuleUpdate,
    ) -> ScheduledTransactionRule:
        # The merge starts from a fresh read on every attempt; the scheduler
        # may have advanced or deactivated the rule in between
        def work(uow: UnitOfWork) -> ScheduledTransactionRule:
            current = self._load(uow, owner_id, rule_id)
            merged = current.model_dump()
            merged.update(changes.model_dump(exclude_unset=True))
            updated = ScheduledTransactionRule(**merged)

            self._validator.validate(uow, owner_id, updated)
            if changes.reschedules:
                updated.next_due = self._next_after_now(updated, uow, self._clock())
            return uow.rules.save_definition(updated)

        return await self._run(work)

    async def update_rule(
        self,
        owner_id: int,
        rule_id: int,
        changes: ScheduledRuleUpdate,
    ) -> ScheduledTransactionRule:
        """
        Apply a partial update.

        next_due is recomputed when frequency, start_date or start_time
        change; other edits take effect from the next occurrence.
        """
        changed = sorted(changes.model_fields_set)
        rule = await self._apply_update(owner_id, rule_id, changes)
        await self._audit.log_rule_updated(rule_id, owner_id, changed)
        return rule

    async def deactivate_rule(self, owner_id: int, rule_id: int) -> ScheduledTransactionRule:
        """Pause a rule. A run already in flight may still finish its occurrence."""
        def work(uow: UnitOfWork) -> ScheduledTransactionRule:
            self._load(uow, owner_id, rule_id)
            return uow.rules.set_active(rule_id, owner_id, False)

        rule = await self._run(work)
        await self._audit.log_rule_active_changed(rule_id, owner_id, False)
        return rule

    async def reactivate_rule(self, owner_id: int, rule_id: int) -> ScheduledTransactionRule:
        """
        Resume a paused or auto-deactivated rule.

        Occurrences missed while inactive are not backfilled. The failure
        state is cleared.
        """
        def work(uow: UnitOfWork) -> ScheduledTransactionRule:
            rule = self._load(uow, owner_id, rule_id)
            now = self._clock()
            next_due = rule.next_due if rule.next_due >= now else self._next_after_now(rule, uow, now)
            return uow.rules.set_active(rule_id, owner_id, True, next_due=next_due)

        rule = await self._run(work)
        await self._audit.log_rule_active_changed(rule_id, owner_id, True)
        return rule

    async def delete_rule(self, owner_id: int, rule_id: int) -> bool:
        """Delete a rule. Transactions it already generated stay in the ledger."""
        def work(uow: UnitOfWork) -> bool:
            if not uow.rules.delete(rule_id, owner_id):
                raise NotFoundError(f"Scheduled rule {rule_id} not found")
            return True

        deleted = await self._run(work)
        await self._audit.log_rule_deleted(rule_id, owner_id)
        return deleted

    async def get_rule(self, owner_id: int, rule_id: int) -> ScheduledTransactionRule:
        return await self._run(lambda uow: self._load(uow, owner_id, rule_id))

    async def list_rules(
        self,
        owner_id: int,
        active: Optional[bool] = None,
        transaction_type: Optional[TransactionType] = None,
    ) -> list[ScheduledTransactionRule]:
        return await self._run(
            lambda uow: uow.rules.list_for_owner(
                owner_id,
                is_active=active,
                transaction_type=transaction_type,
            )
        )

    async def get_rule_status(self, owner_id: int, rule_id: int) -> RuleStatus:
        """What the owner sees: active flag, last failure and what comes next."""
        def work(uow: UnitOfWork) -> RuleStatus:
            rule = self._load(uow, owner_id, rule_id)
            upcoming = []
            if rule.is_active:
                tz = resolve_zone(uow.ledger.get_owner_settings(owner_id).timezone)
                upcoming = [rule.next_due] + upcoming_occurrences(
                    rule, rule.next_due, self._preview_limit - 1, tz
                )
            return RuleStatus(
                rule_id=rule.id,
                is_active=rule.is_active,
                frequency=rule.frequency,
                next_due=rule.next_due,
                last_run_at=rule.last_run_at,
                last_error=rule.last_error,
                last_error_at=rule.last_error_at,
                consecutive_failures=rule.consecutive_failures,
                upcoming=upcoming[: self._preview_limit],
            )

        return await self._run(work)

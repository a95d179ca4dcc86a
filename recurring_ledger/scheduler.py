"""
Scheduler Loop for Recurring Ledger

This module ties together all the components and defines the
end-to-end flow of one tick:

    release stale claims -> fetch due rules ->
        for each rule (concurrently): claim -> materialize -> commit advance

DESIGN DECISION: The scheduler enforces the boundaries:
- A rule is only processed by the sweep that won its claim
- Each occurrence is its own unit of work (post + balances + cursor)
- One rule's failure never aborts its siblings or the host process
- Every outcome is audited

Per-rule work is synchronous database work, so it runs on worker threads
(asyncio.to_thread) bounded by a semaphore. The event loop only
coordinates and writes audit events.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, NamedTuple, Optional
from uuid import UUID, uuid4

import structlog
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

from recurring_ledger.audit import AuditLogger, create_correlation_id
from recurring_ledger.config import Settings, SchedulerSettings, get_settings
from recurring_ledger.models.audit import AuditEvent, AuditEventBuilder, AuditEventType
from recurring_ledger.models.ledger import ScheduledTransactionRule, ensure_utc, utc_now
from recurring_ledger.models.scheduling import (
    RuleRunResult,
    RunOutcome,
    SchedulerStatus,
    StaleClaimResolution,
    TickReport,
)
from recurring_ledger.services.currency import CurrencyConverter
from recurring_ledger.services.errors import (
    ClaimLostError,
    CurrencyMismatchError,
    DanglingReferenceError,
    DuplicateError,
    MissingExchangeRateError,
    PermanentLedgerError,
    TransientLedgerError,
)
from recurring_ledger.services.ledger import LedgerPoster, LedgerService
from recurring_ledger.services.materializer import TransactionMaterializer
from recurring_ledger.services.recurrence import (
    ZoneLike,
    compute_next_occurrence,
    resolve_zone,
    within_execution_window,
)
from recurring_ledger.services.rules import ScheduledRuleService
from recurring_ledger.services.storage import (
    SqlAuditStorage,
    SqlUnitOfWork,
    UnitOfWork,
    claim_rule,
    create_engine_from_settings,
    create_session_factory,
)
from recurring_ledger.validation import RuleValidator


logger = structlog.get_logger()


def _error_text(error: Exception) -> str:
    code = getattr(error, "code", type(error).__name__)
    return f"{code}: {error}"


def _permanent_event_type(error: PermanentLedgerError) -> AuditEventType:
    if isinstance(error, DanglingReferenceError):
        return AuditEventType.DANGLING_REFERENCE
    if isinstance(error, CurrencyMismatchError):
        return AuditEventType.CURRENCY_MISMATCH
    return AuditEventType.RULE_DEACTIVATED


class SchedulerLoop:
    """
    Periodically materializes due recurring rules.

    Usage:
        scheduler = SchedulerLoop(uow_factory, materializer, audit_logger)
        report = await scheduler.tick()          # one sweep
        await scheduler.run_forever()            # until stop()
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        materializer: TransactionMaterializer,
        audit_logger: Optional[AuditLogger] = None,
        settings: Optional[SchedulerSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._uow_factory = uow_factory
        self._materializer = materializer
        self._audit = audit_logger or AuditLogger()
        self._settings = settings or get_settings().scheduler
        self._clock = clock

        self._stop_event: Optional[asyncio.Event] = None
        self._running = False
        self._started_at: Optional[datetime] = None
        self._ticks_completed = 0
        self._last_report: Optional[TickReport] = None

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def run_forever(self) -> None:
        """Tick every tick_interval_seconds until stop() is called."""
        self._stop_event = asyncio.Event()
        self._running = True
        self._started_at = self._clock()
        logger.info(
            "scheduler_started",
            tick_interval_seconds=self._settings.tick_interval_seconds,
            max_concurrency=self._settings.max_concurrency,
        )
        try:
            while not self._stop_event.is_set():
                try:
                    await self.tick()
                except Exception as e:
                    # A broken tick must not take the host process down
                    logger.exception("tick_failed", error=str(e))
                    await self._audit.log_error("TickFailed", str(e))
                try:
                    await asyncio.wait_for(
                        self._stop_event.wait(),
                        timeout=self._settings.tick_interval_seconds,
                    )
                except asyncio.TimeoutError:
                    pass
        finally:
            self._running = False
            logger.info("scheduler_stopped", ticks_completed=self._ticks_completed)

    def stop(self) -> None:
        """Ask run_forever() to exit after the current tick."""
        if self._stop_event is not None:
            self._stop_event.set()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            is_running=self._running,
            tick_interval_seconds=self._settings.tick_interval_seconds,
            ticks_completed=self._ticks_completed,
            started_at=self._started_at,
            last_tick_at=self._last_report.finished_at if self._last_report else None,
            last_tick_summary=self._last_report.summary() if self._last_report else None,
        )

    # =========================================================================
    # TICK
    # =========================================================================

    async def tick(self, as_of: Optional[datetime] = None) -> TickReport:
        """
        Run one sweep.

        Args:
            as_of: Logical "now" for the sweep. Defaults to the clock.
                Rules with next_due <= as_of are processed.

        Returns:
            TickReport with one RuleRunResult per due rule
        """
        as_of = ensure_utc(as_of or self._clock())
        correlation_id = create_correlation_id()
        report = TickReport(
            correlation_id=correlation_id,
            as_of=as_of,
            started_at=self._clock(),
        )
        log = logger.bind(correlation_id=str(correlation_id), as_of=as_of.isoformat())

        report.stale_claims = await asyncio.to_thread(self._release_stale_claims, as_of)
        for resolution in report.stale_claims:
            await self._audit.log_stale_claim_released(
                rule_id=resolution.rule_id,
                claimed_at=resolution.claimed_at,
                advanced=resolution.advanced,
                correlation_id=correlation_id,
            )

        due = await asyncio.to_thread(self._fetch_due, as_of)
        report.due_count = len(due)
        log.info("tick_started", due_count=len(due))

        semaphore = asyncio.Semaphore(self._settings.max_concurrency)
        report.results = list(
            await asyncio.gather(
                *(self._process_guarded(rule, as_of, correlation_id, semaphore) for rule in due)
            )
        )

        report.finished_at = self._clock()
        self._last_report = report
        self._ticks_completed += 1

        summary = report.summary()
        log.info(
            "tick_completed",
            due_count=report.due_count,
            transactions_created=report.transactions_created,
            stale_claims_released=len(report.stale_claims),
        )
        await self._audit.log_tick_completed(summary, correlation_id)
        return report

    def _zone_for(self, uow: UnitOfWork, owner_id: int) -> ZoneLike:
        return resolve_zone(uow.ledger.get_owner_settings(owner_id).timezone)

    def _release_stale_claims(self, as_of: datetime) -> list[StaleClaimResolution]:
        older_than = as_of - timedelta(seconds=self._settings.stale_claim_grace_seconds)
        with self._uow_factory() as uow:
            def next_due_after(rule: ScheduledTransactionRule) -> Optional[datetime]:
                return compute_next_occurrence(rule, rule.next_due, self._zone_for(uow, rule.owner_id))

            return uow.rules.release_stale_claims(older_than, next_due_after)

    def _fetch_due(self, as_of: datetime) -> list[ScheduledTransactionRule]:
        with self._uow_factory() as uow:
            return uow.rules.fetch_due_rules(as_of)

    async def _process_guarded(
        self,
        rule: ScheduledTransactionRule,
        as_of: datetime,
        correlation_id: UUID,
        semaphore: asyncio.Semaphore,
    ) -> RuleRunResult:
        async with semaphore:
            try:
                result, events = await asyncio.to_thread(
                    self._process_rule, rule, as_of, correlation_id
                )
            except Exception as e:
                # Includes failures while recording a failure; the claim, if
                # any, is picked up by stale-claim recovery
                logger.exception("rule_processing_crashed", rule_id=rule.id, error=str(e))
                result = RuleRunResult(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    outcome=RunOutcome.FAILED,
                    next_due=rule.next_due,
                    error_code=type(e).__name__,
                    error_message=str(e),
                )
                events = [
                    AuditEventBuilder.system_error(
                        error_type=type(e).__name__,
                        error_message=str(e),
                        correlation_id=correlation_id,
                        rule_id=rule.id,
                        owner_id=rule.owner_id,
                    )
                ]

        for event in events:
            await self._audit.log(event)
        return result

    # =========================================================================
    # PER-RULE WORK (worker thread)
    # =========================================================================

    def _process_rule(
        self,
        rule: ScheduledTransactionRule,
        as_of: datetime,
        correlation_id: UUID,
    ) -> tuple[RuleRunResult, list[AuditEvent]]:
        token = uuid4().hex
        try:
            won = claim_rule(
                self._uow_factory,
                rule.id,
                token,
                as_of,
                self._settings.claim_timeout_seconds,
            )
        except OperationalError as e:
            logger.warning("claim_timed_out", rule_id=rule.id, error=str(e))
            return (
                RuleRunResult(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    outcome=RunOutcome.CONTENDED,
                    next_due=rule.next_due,
                    error_code="StorageLocked",
                    error_message=str(e),
                ),
                [AuditEventBuilder.claim_contended(rule.id, rule.owner_id, correlation_id)],
            )

        if not won:
            with self._uow_factory() as uow:
                current = uow.rules.get(rule.id)
            if current is None or not current.is_active:
                return (
                    RuleRunResult(
                        rule_id=rule.id,
                        owner_id=rule.owner_id,
                        outcome=RunOutcome.INACTIVE,
                        is_active=False,
                    ),
                    [],
                )
            return (
                RuleRunResult(
                    rule_id=rule.id,
                    owner_id=rule.owner_id,
                    outcome=RunOutcome.CONTENDED,
                    next_due=current.next_due,
                ),
                [AuditEventBuilder.claim_contended(rule.id, rule.owner_id, correlation_id)],
            )

        return self._run_claimed(rule, token, as_of, correlation_id)

    def _release_with_error(
        self,
        rule_id: int,
        token: str,
        error: Exception,
        as_of: datetime,
        deactivate: bool = False,
        count_failure: bool = False,
    ) -> Optional[int]:
        with self._uow_factory() as uow:
            return uow.rules.release_claim(
                rule_id,
                token,
                error=_error_text(error),
                failed_at=as_of,
                deactivate=deactivate,
                count_failure=count_failure,
            )

    def _run_claimed(
        self,
        claimed: ScheduledTransactionRule,
        token: str,
        as_of: datetime,
        correlation_id: UUID,
    ) -> tuple[RuleRunResult, list[AuditEvent]]:
        """
        Catch up on every due occurrence of a claimed rule.

        Each occurrence commits separately. The claim is kept between
        occurrences and released with the last one.
        """
        rule_id = claimed.id
        owner_id = claimed.owner_id
        max_occurrences = self._settings.max_occurrences_per_rule
        events: list[AuditEvent] = []
        result = RuleRunResult(
            rule_id=rule_id,
            owner_id=owner_id,
            outcome=RunOutcome.MATERIALIZED,
            next_due=claimed.next_due,
        )

        for handled in range(max_occurrences):
            try:
                with self._uow_factory() as uow:
                    rule = uow.rules.get(rule_id)
                    if rule is None:
                        # Deleted mid-run; the claim went with the row
                        result.outcome = RunOutcome.INACTIVE
                        result.is_active = False
                        return result, events
                    if rule.claim_token != token:
                        raise ClaimLostError(rule_id)

                    if not rule.is_active:
                        # Paused by the owner since the sweep started
                        uow.rules.release_claim(rule_id, token)
                        result.is_active = False
                        if not result.transaction_ids:
                            result.outcome = RunOutcome.INACTIVE
                        return result, events

                    tz = self._zone_for(uow, owner_id)
                    occurrence = rule.next_due

                    if rule.end_date is not None and occurrence.astimezone(tz).date() > rule.end_date:
                        # End date was moved before the cursor
                        uow.rules.commit_advance(rule_id, token, None, False, as_of)
                        following = None
                        more = False
                    else:
                        following = compute_next_occurrence(rule, occurrence, tz)
                        more = (
                            following is not None
                            and following <= as_of
                            and handled + 1 < max_occurrences
                        )

                        if within_execution_window(
                            rule, occurrence, as_of, self._settings.end_time_policy, tz
                        ):
                            transaction = self._materializer.materialize(uow, rule, occurrence, tz)
                            result.transaction_ids.append(transaction.id)
                            result.occurrences_posted += 1
                            events.append(
                                AuditEventBuilder.occurrence_materialized(
                                    rule_id=rule_id,
                                    owner_id=owner_id,
                                    transaction_id=transaction.id,
                                    occurrence_at=occurrence,
                                    amount=transaction.amount,
                                    currency_code=transaction.currency_code,
                                    correlation_id=correlation_id,
                                )
                            )
                        else:
                            result.occurrences_skipped += 1
                            events.append(
                                AuditEventBuilder.occurrence_skipped(
                                    rule_id, owner_id, occurrence, correlation_id
                                )
                            )

                        uow.rules.commit_advance(
                            rule_id,
                            token,
                            following,
                            following is not None,
                            as_of,
                            release=not more,
                        )

                result.next_due = following or result.next_due
                result.is_active = following is not None
                if not more:
                    break

            except DuplicateError as e:
                # Occurrence already in the ledger: move past it without re-posting
                logger.warning("occurrence_already_posted", rule_id=rule_id, error=str(e))
                with self._uow_factory() as uow:
                    rule = uow.rules.get(rule_id)
                    if rule is None:
                        result.outcome = RunOutcome.INACTIVE
                        result.is_active = False
                        return result, events
                    tz = self._zone_for(uow, owner_id)
                    following = compute_next_occurrence(rule, rule.next_due, tz)
                    uow.rules.commit_advance(
                        rule_id, token, following, following is not None, as_of
                    )
                result.occurrences_skipped += 1
                result.next_due = following or result.next_due
                result.is_active = following is not None
                break

            except TransientLedgerError as e:
                failures = self._release_with_error(
                    rule_id, token, e, as_of, count_failure=True
                ) or 0
                result.outcome = RunOutcome.DEFERRED
                result.error_code = e.code
                result.error_message = str(e)
                result.consecutive_failures = failures
                if isinstance(e, MissingExchangeRateError):
                    events.append(
                        AuditEventBuilder.missing_exchange_rate(
                            rule_id=rule_id,
                            owner_id=owner_id,
                            error_message=str(e),
                            consecutive_failures=failures,
                            repeated=failures >= self._settings.missing_rate_alert_threshold,
                            correlation_id=correlation_id,
                        )
                    )
                return result, events

            except PermanentLedgerError as e:
                self._release_with_error(rule_id, token, e, as_of, deactivate=True)
                result.outcome = RunOutcome.DEACTIVATED
                result.is_active = False
                result.error_code = e.code
                result.error_message = str(e)
                events.append(
                    AuditEventBuilder.permanent_failure(
                        event_type=_permanent_event_type(e),
                        rule_id=rule_id,
                        owner_id=owner_id,
                        error_code=e.code,
                        error_message=str(e),
                        correlation_id=correlation_id,
                    )
                )
                return result, events

            except ClaimLostError as e:
                logger.warning("claim_lost", rule_id=rule_id)
                result.outcome = RunOutcome.CONTENDED
                result.error_code = e.code
                result.error_message = str(e)
                return result, events

            except Exception as e:
                logger.exception("rule_processing_failed", rule_id=rule_id, error=str(e))
                failures = self._release_with_error(
                    rule_id, token, e, as_of, count_failure=True
                )
                result.outcome = RunOutcome.FAILED
                result.error_code = getattr(e, "code", type(e).__name__)
                result.error_message = str(e)
                result.consecutive_failures = failures or 0
                events.append(
                    AuditEventBuilder.system_error(
                        error_type=result.error_code,
                        error_message=str(e),
                        correlation_id=correlation_id,
                        rule_id=rule_id,
                        owner_id=owner_id,
                    )
                )
                return result, events

        if not result.is_active:
            result.outcome = RunOutcome.EXHAUSTED
            events.append(AuditEventBuilder.rule_exhausted(rule_id, owner_id, correlation_id))
        elif not result.transaction_ids and result.occurrences_skipped:
            result.outcome = RunOutcome.SKIPPED

        return result, events


class AppComponents(NamedTuple):
    """Everything the entry point needs, wired to one database."""

    engine: Engine
    scheduler: SchedulerLoop
    rule_service: ScheduledRuleService
    ledger_service: LedgerService
    audit_logger: AuditLogger


def create_app_components(
    settings: Optional[Settings] = None,
    use_audit_storage: bool = True,
) -> AppComponents:
    """
    Factory function to create all application components.

    Args:
        settings: Settings to build from; defaults to get_settings()
        use_audit_storage: Persist audit events to the database.
                    Set to False to only log them locally.
    """
    settings = settings or get_settings()
    ledger_settings = settings.ledger

    engine = create_engine_from_settings(settings.database)
    session_factory = create_session_factory(engine)

    def uow_factory() -> UnitOfWork:
        return SqlUnitOfWork(session_factory, ledger_settings)

    audit_storage = SqlAuditStorage(session_factory) if use_audit_storage else None
    audit_logger = AuditLogger(audit_storage)

    validator = RuleValidator(ledger_settings)
    poster = LedgerPoster(CurrencyConverter(ledger_settings))

    scheduler = SchedulerLoop(
        uow_factory,
        TransactionMaterializer(poster),
        audit_logger=audit_logger,
        settings=settings.scheduler,
    )
    rule_service = ScheduledRuleService(uow_factory, validator=validator, audit_logger=audit_logger)
    ledger_service = LedgerService(
        uow_factory,
        poster=poster,
        validator=validator,
        audit_logger=audit_logger,
    )

    return AppComponents(
        engine=engine,
        scheduler=scheduler,
        rule_service=rule_service,
        ledger_service=ledger_service,
        audit_logger=audit_logger,
    )

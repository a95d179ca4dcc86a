"""
Scheduler Result Models

A tick of the scheduler produces one RuleRunResult per due rule and a
TickReport summarising the whole sweep. These are what the entry point
prints and what tests assert against.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class RunOutcome(str, Enum):
    """
    Final state of one rule within one tick.

    MATERIALIZED: at least one occurrence was posted
    EXHAUSTED:    occurrences were posted and the rule is now inactive
    SKIPPED:      the occurrence's execution window had closed
    DEFERRED:     transient failure (missing exchange rate), retried next tick
    DEACTIVATED:  permanent failure (dangling reference, currency mismatch)
    CONTENDED:    another sweep holds the claim
    INACTIVE:     rule was deactivated between fetch and claim
    FAILED:       unexpected error, claim released and error recorded
    """
    MATERIALIZED = "materialized"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    DEACTIVATED = "deactivated"
    CONTENDED = "contended"
    INACTIVE = "inactive"
    FAILED = "failed"


class RuleRunResult(BaseModel):
    """Outcome of processing one due rule."""

    rule_id: int
    owner_id: int
    outcome: RunOutcome
    occurrences_posted: int = Field(default=0, ge=0)
    occurrences_skipped: int = Field(default=0, ge=0)
    transaction_ids: list[int] = Field(default_factory=list)
    next_due: Optional[datetime] = None
    is_active: bool = True
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    # Consecutive failures after this run; used for missing-rate alerting
    consecutive_failures: int = 0

    @property
    def succeeded(self) -> bool:
        return self.outcome in (
            RunOutcome.MATERIALIZED,
            RunOutcome.EXHAUSTED,
            RunOutcome.SKIPPED,
        )


class StaleClaimResolution(BaseModel):
    """What recovery did with one abandoned claim."""

    rule_id: int
    claimed_at: datetime
    # True when the occurrence had already been posted and the cursor was
    # advanced instead of simply releasing the claim
    advanced: bool = False


class TickReport(BaseModel):
    """Summary of a single scheduler sweep."""

    correlation_id: UUID = Field(default_factory=uuid4)
    as_of: datetime
    started_at: datetime
    finished_at: Optional[datetime] = None
    due_count: int = 0
    results: list[RuleRunResult] = Field(default_factory=list)
    stale_claims: list[StaleClaimResolution] = Field(default_factory=list)

    def count(self, outcome: RunOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def transactions_created(self) -> int:
        return sum(len(r.transaction_ids) for r in self.results)

    def result_for(self, rule_id: int) -> Optional[RuleRunResult]:
        for result in self.results:
            if result.rule_id == rule_id:
                return result
        return None

    def summary(self) -> dict:
        """Compact dict for structured logging."""
        return {
            "correlation_id": str(self.correlation_id),
            "as_of": self.as_of.isoformat(),
            "due_count": self.due_count,
            "transactions_created": self.transactions_created,
            "stale_claims_released": len(self.stale_claims),
            **{outcome.value: self.count(outcome) for outcome in RunOutcome},
        }


class SchedulerStatus(BaseModel):
    """Snapshot of a running (or stopped) scheduler loop."""

    is_running: bool
    tick_interval_seconds: float
    ticks_completed: int = 0
    started_at: Optional[datetime] = None
    last_tick_at: Optional[datetime] = None
    last_tick_summary: Optional[dict] = None

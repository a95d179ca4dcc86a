"""
Audit Models for Recurring Ledger

Rule changes and scheduler runs leave audit events behind, as do manual
ledger entries. A rule's events explain every transaction it
generated and, when it stops firing, why.

DESIGN DECISION: Events are append-only. Nothing updates or deletes them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field

from recurring_ledger.models.ledger import utc_now


class AuditEventType(str, Enum):
    """
    Audited event kinds.

    Every step of a rule's lifecycle has its own event type.
    """
    # Rule management
    RULE_CREATED = "rule_created"
    RULE_UPDATED = "rule_updated"
    RULE_DEACTIVATED = "rule_deactivated"
    RULE_REACTIVATED = "rule_reactivated"
    RULE_DELETED = "rule_deleted"
    RULE_EXHAUSTED = "rule_exhausted"

    # Scheduler
    TICK_COMPLETED = "tick_completed"
    OCCURRENCE_MATERIALIZED = "occurrence_materialized"
    OCCURRENCE_SKIPPED = "occurrence_skipped"
    CLAIM_CONTENDED = "claim_contended"
    STALE_CLAIM_RELEASED = "stale_claim_released"

    # Materialization failures
    DANGLING_REFERENCE = "dangling_reference"
    CURRENCY_MISMATCH = "currency_mismatch"
    MISSING_EXCHANGE_RATE = "missing_exchange_rate"
    MISSING_RATE_REPEATED = "missing_rate_repeated"

    # Manual ledger activity
    TRANSACTION_RECORDED = "transaction_recorded"
    TRANSACTION_UPDATED = "transaction_updated"
    TRANSACTION_DELETED = "transaction_deleted"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    One entry in the audit trail.

    Scheduler events carry the tick's correlation_id so a whole sweep
    can be read back together.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=utc_now,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    owner_id: Optional[int] = Field(
        default=None,
        description="Owner the entity belongs to"
    )
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'rule', 'transaction')"
    )
    entity_id: Optional[int] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one tick)"
    )

    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by the owner rather than the scheduler?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "owner_id": self.owner_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.rule_created(rule_id, owner_id, "monthly")
        event = AuditEventBuilder.dangling_reference(rule_id, owner_id, msg, cid)
    """

    @staticmethod
    def rule_created(
        rule_id: int,
        owner_id: int,
        frequency: str,
        next_due: datetime,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_CREATED,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            description=f"Recurring {frequency} rule created",
            details={
                "frequency": frequency,
                "next_due": next_due.isoformat(),
            },
            is_user_action=True,
        )

    @staticmethod
    def rule_updated(
        rule_id: int,
        owner_id: int,
        changed_fields: list[str],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_UPDATED,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            description=f"Rule updated: {', '.join(changed_fields) or 'no changes'}",
            details={"changed_fields": changed_fields},
            is_user_action=True,
        )

    @staticmethod
    def rule_active_changed(
        rule_id: int,
        owner_id: int,
        is_active: bool,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.RULE_REACTIVATED
                if is_active
                else AuditEventType.RULE_DEACTIVATED
            ),
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            description="Rule reactivated by owner" if is_active else "Rule deactivated by owner",
            is_user_action=True,
        )

    @staticmethod
    def rule_deleted(rule_id: int, owner_id: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_DELETED,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            description="Rule deleted; generated transactions are kept",
            is_user_action=True,
        )

    @staticmethod
    def occurrence_materialized(
        rule_id: int,
        owner_id: int,
        transaction_id: int,
        occurrence_at: datetime,
        amount: Decimal,
        currency_code: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCE_MATERIALIZED,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description=f"Occurrence posted: {amount} {currency_code}",
            details={
                "transaction_id": transaction_id,
                "occurrence_at": occurrence_at.isoformat(),
                "amount": str(amount),
                "currency_code": currency_code,
            },
        )

    @staticmethod
    def occurrence_skipped(
        rule_id: int,
        owner_id: int,
        occurrence_at: datetime,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCE_SKIPPED,
            severity=AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Occurrence skipped: execution window had closed",
            details={"occurrence_at": occurrence_at.isoformat()},
        )

    @staticmethod
    def rule_exhausted(
        rule_id: int,
        owner_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_EXHAUSTED,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Rule has no further occurrences and was deactivated",
        )

    @staticmethod
    def permanent_failure(
        event_type: AuditEventType,
        rule_id: int,
        owner_id: int,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=event_type,
            severity=AuditSeverity.ERROR,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Rule deactivated after a permanent materialization failure",
            error_code=error_code,
            error_message=error_message,
        )

    @staticmethod
    def missing_exchange_rate(
        rule_id: int,
        owner_id: int,
        error_message: str,
        consecutive_failures: int,
        repeated: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=(
                AuditEventType.MISSING_RATE_REPEATED
                if repeated
                else AuditEventType.MISSING_EXCHANGE_RATE
            ),
            severity=AuditSeverity.ERROR if repeated else AuditSeverity.WARNING,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description=(
                f"Exchange rate still missing after {consecutive_failures} attempts"
                if repeated
                else "Exchange rate missing; occurrence deferred to next tick"
            ),
            details={"consecutive_failures": consecutive_failures},
            error_code="MissingExchangeRate",
            error_message=error_message,
        )

    @staticmethod
    def claim_contended(
        rule_id: int,
        owner_id: int,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CLAIM_CONTENDED,
            severity=AuditSeverity.DEBUG,
            owner_id=owner_id,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description="Rule already claimed by another sweep; skipped this tick",
        )

    @staticmethod
    def stale_claim_released(
        rule_id: int,
        claimed_at: datetime,
        advanced: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STALE_CLAIM_RELEASED,
            severity=AuditSeverity.WARNING,
            entity_type="rule",
            entity_id=rule_id,
            correlation_id=correlation_id,
            description=(
                "Stale claim released; occurrence was already posted, cursor advanced"
                if advanced
                else "Stale claim released; rule eligible again"
            ),
            details={
                "claimed_at": claimed_at.isoformat(),
                "advanced": advanced,
            },
        )

    @staticmethod
    def tick_completed(
        summary: dict,
        correlation_id: UUID,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TICK_COMPLETED,
            severity=AuditSeverity.DEBUG,
            correlation_id=correlation_id,
            description=(
                f"Tick processed {summary.get('due_count', 0)} due rules, "
                f"created {summary.get('transactions_created', 0)} transactions"
            ),
            details=summary,
        )

    @staticmethod
    def transaction_recorded(
        transaction_id: int,
        owner_id: int,
        transaction_type: str,
        amount: Decimal,
        currency_code: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_RECORDED,
            owner_id=owner_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Manual {transaction_type} recorded: {amount} {currency_code}",
            details={
                "transaction_type": transaction_type,
                "amount": str(amount),
                "currency_code": currency_code,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_updated(
        transaction_id: int,
        owner_id: int,
        changed_fields: list[str],
        amount: Decimal,
        currency_code: str,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UPDATED,
            owner_id=owner_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description=f"Transaction edited and reposted: {amount} {currency_code}",
            details={
                "changed_fields": changed_fields,
                "amount": str(amount),
                "currency_code": currency_code,
            },
            is_user_action=True,
        )

    @staticmethod
    def transaction_deleted(transaction_id: int, owner_id: int) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_DELETED,
            owner_id=owner_id,
            entity_type="transaction",
            entity_id=transaction_id,
            description="Transaction deleted and balances reverted",
            is_user_action=True,
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
        rule_id: Optional[int] = None,
        owner_id: Optional[int] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            owner_id=owner_id,
            entity_type="rule" if rule_id is not None else None,
            entity_id=rule_id,
            description=f"System error: {error_type}",
            error_code=error_type,
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )

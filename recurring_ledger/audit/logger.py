"""
Audit Logger

DESIGN DECISION: Every significant action in the system is logged.
This provides:
1. Complete traceability of generated transactions
2. Debugging capability for failing rules
3. Owners can see why a rule stopped firing

The audit logger:
- Is async to not block the scheduler loop
- Gracefully handles failures (doesn't crash a tick if logging fails)
- Supports correlation IDs to trace all events of one tick
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

import structlog

from recurring_ledger.models.audit import AuditEvent, AuditEventBuilder
from recurring_ledger.services.storage import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for operators)
    2. The audit table (for persistence and owner visibility)
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger()

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()
        severity = event.severity.value
        if severity in ("error", "critical"):
            self._logger.error("audit_event", **log_dict)
        elif severity == "warning":
            self._logger.warning("audit_event", **log_dict)
        elif severity == "debug":
            self._logger.debug("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    async def log_rule_created(
        self,
        rule_id: int,
        owner_id: int,
        frequency: str,
        next_due: datetime,
    ) -> None:
        """Log rule creation."""
        await self.log(AuditEventBuilder.rule_created(rule_id, owner_id, frequency, next_due))

    async def log_rule_updated(
        self,
        rule_id: int,
        owner_id: int,
        changed_fields: list[str],
    ) -> None:
        await self.log(AuditEventBuilder.rule_updated(rule_id, owner_id, changed_fields))

    async def log_rule_active_changed(
        self,
        rule_id: int,
        owner_id: int,
        is_active: bool,
    ) -> None:
        """Log an owner pausing or resuming a rule."""
        await self.log(AuditEventBuilder.rule_active_changed(rule_id, owner_id, is_active))

    async def log_rule_deleted(self, rule_id: int, owner_id: int) -> None:
        await self.log(AuditEventBuilder.rule_deleted(rule_id, owner_id))

    async def log_stale_claim_released(
        self,
        rule_id: int,
        claimed_at: datetime,
        advanced: bool,
        correlation_id: UUID,
    ) -> None:
        event = AuditEventBuilder.stale_claim_released(
            rule_id=rule_id,
            claimed_at=claimed_at,
            advanced=advanced,
            correlation_id=correlation_id,
        )
        await self.log(event)

    async def log_tick_completed(self, summary: dict, correlation_id: UUID) -> None:
        await self.log(AuditEventBuilder.tick_completed(summary, correlation_id))

    async def log_transaction_recorded(
        self,
        transaction_id: int,
        owner_id: int,
        transaction_type: str,
        amount: Decimal,
        currency_code: str,
    ) -> None:
        """Log a manually recorded transaction."""
        event = AuditEventBuilder.transaction_recorded(
            transaction_id=transaction_id,
            owner_id=owner_id,
            transaction_type=transaction_type,
            amount=amount,
            currency_code=currency_code,
        )
        await self.log(event)

    async def log_transaction_updated(
        self,
        transaction_id: int,
        owner_id: int,
        changed_fields: list[str],
        amount: Decimal,
        currency_code: str,
    ) -> None:
        event = AuditEventBuilder.transaction_updated(
            transaction_id=transaction_id,
            owner_id=owner_id,
            changed_fields=changed_fields,
            amount=amount,
            currency_code=currency_code,
        )
        await self.log(event)

    async def log_transaction_deleted(self, transaction_id: int, owner_id: int) -> None:
        await self.log(AuditEventBuilder.transaction_deleted(transaction_id, owner_id))

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
        rule_id: Optional[int] = None,
        owner_id: Optional[int] = None,
    ) -> None:
        """Log an error."""
        event = AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
            rule_id=rule_id,
            owner_id=owner_id,
        )
        await self.log(event)


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    The scheduler creates one per tick and passes it through every
    rule processed in that tick.
    """
    return uuid4()

"""
Transaction Materializer

Turns one occurrence of a claimed rule into a posted transaction.

The materializer knows nothing about claims or cursors. It builds the
transaction for an occurrence and hands it to the shared LedgerPoster
inside the caller's unit of work; the scheduler then advances the rule in
that same unit, so posting and advancing commit or roll back together.
"""

from datetime import datetime

import structlog
from pydantic import ValidationError

from recurring_ledger.models.ledger import ScheduledTransactionRule, Transaction, ensure_utc
from recurring_ledger.services.errors import PermanentLedgerError
from recurring_ledger.services.ledger import LedgerPoster
from recurring_ledger.services.recurrence import UTC, ZoneLike
from recurring_ledger.services.storage import UnitOfWork


logger = structlog.get_logger()


class TransactionMaterializer:
    """
    Posts rule occurrences to the ledger.

    Raises whatever the poster raises: DanglingReferenceError and
    CurrencyMismatchError are permanent, MissingExchangeRateError is
    transient. The scheduler decides what each means for the rule.
    """

    def __init__(self, poster: LedgerPoster):
        self._poster = poster

    def build_transaction(
        self,
        rule: ScheduledTransactionRule,
        occurrence_at: datetime,
        tz: ZoneLike = UTC,
    ) -> Transaction:
        """
        The transaction an occurrence produces, before posting.

        transaction_date is the occurrence's calendar date in the owner's
        zone, so a 23:30 local rule is dated on its local day.
        """
        occurrence_at = ensure_utc(occurrence_at)
        try:
            return Transaction(
                owner_id=rule.owner_id,
                transaction_type=rule.transaction_type,
                amount=rule.amount,
                currency_code=rule.currency_code,
                transaction_date=occurrence_at.astimezone(tz).date(),
                category_id=rule.category_id,
                source_account_id=rule.source_account_id,
                destination_account_id=rule.destination_account_id,
                description=rule.description,
                scheduled_rule_id=rule.id,
                occurrence_at=occurrence_at,
            )
        except ValidationError as e:
            # A stored rule that no longer forms a valid transaction will not heal
            raise PermanentLedgerError(f"Rule {rule.id} cannot form a valid transaction: {e}") from e

    def materialize(
        self,
        uow: UnitOfWork,
        rule: ScheduledTransactionRule,
        occurrence_at: datetime,
        tz: ZoneLike = UTC,
    ) -> Transaction:
        """
        Post one occurrence inside `uow` (no commit).

        Returns:
            The saved transaction, with its id
        """
        transaction = self.build_transaction(rule, occurrence_at, tz)
        saved = self._poster.post(uow, transaction)
        logger.debug(
            "occurrence_posted",
            rule_id=rule.id,
            transaction_id=saved.id,
            occurrence_at=saved.occurrence_at.isoformat(),
        )
        return saved

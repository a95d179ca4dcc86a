"""
Ledger Posting and Manual Ledger Operations

DESIGN DECISION: There is exactly one code path that turns a Transaction
into balance changes: LedgerPoster. Manual entries and scheduler-generated
occurrences both go through it, so the directional invariant, currency
matching and cross-currency conversion behave identically no matter which
subsystem created the transaction.

Posting never commits. The caller's unit of work decides when the
transaction insert and the balance updates become visible, together.
"""

import asyncio
from datetime import date
from decimal import Decimal
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from recurring_ledger.audit import AuditLogger
from recurring_ledger.models.ledger import (
    Account,
    AccountCategory,
    AccountUpdate,
    Category,
    CategoryKind,
    ExchangeRate,
    OwnerSettings,
    SupportedCurrency,
    Transaction,
    TransactionType,
    TransactionUpdate,
    check_account_direction,
)
from recurring_ledger.services.currency import CurrencyConverter
from recurring_ledger.services.errors import (
    AccountInUseError,
    CurrencyMismatchError,
    DanglingReferenceError,
    LedgerValidationError,
    NotFoundError,
)
from recurring_ledger.services.storage import UnitOfWork
from recurring_ledger.validation import RuleValidator


logger = structlog.get_logger()


class BalanceDelta(BaseModel):
    """Signed change to one account's balance, in that account's currency."""

    account_id: int
    delta: Decimal


class LedgerPoster:
    """
    Resolves a transaction against the store and applies it.

    Usage:
        with uow_factory() as uow:
            saved = poster.post(uow, transaction)
    """

    def __init__(self, converter: Optional[CurrencyConverter] = None):
        self._converter = converter or CurrencyConverter()

    def _load_account(self, uow: UnitOfWork, account_id: int, owner_id: int) -> Account:
        account = uow.ledger.get_account(account_id, owner_id=owner_id)
        if account is None:
            raise DanglingReferenceError("account", account_id)
        return account

    def _require_currency(self, account: Account, currency_code: str) -> None:
        if account.currency_code != currency_code:
            raise CurrencyMismatchError(account.id, currency_code, account.currency_code)

    def prepare(
        self,
        uow: UnitOfWork,
        transaction: Transaction,
    ) -> tuple[Transaction, list[BalanceDelta]]:
        """
        Reload everything the transaction references and compute its effect.

        Returns:
            The transaction with quantized amounts (and conversion details
            for cross-currency transfers) plus the balance deltas to apply.

        Raises:
            DanglingReferenceError: An account or category no longer exists
            CurrencyMismatchError: The amount's currency differs from the
                account it is taken from or credited to
            MissingExchangeRateError: A cross-currency transfer has no rate
        """
        check_account_direction(
            transaction.transaction_type,
            transaction.source_account_id,
            transaction.destination_account_id,
        )
        owner_id = transaction.owner_id
        amount = self._converter.quantize_amount(transaction.amount)
        if amount <= 0:
            raise LedgerValidationError(
                f"Amount {transaction.amount} rounds to zero at the ledger scale"
            )

        if transaction.category_id is not None:
            if uow.ledger.get_category(transaction.category_id, owner_id=owner_id) is None:
                raise DanglingReferenceError("category", transaction.category_id)

        updates: dict = {"amount": amount}
        deltas: list[BalanceDelta] = []

        if transaction.transaction_type == TransactionType.EXPENSE:
            source = self._load_account(uow, transaction.source_account_id, owner_id)
            self._require_currency(source, transaction.currency_code)
            deltas.append(BalanceDelta(account_id=source.id, delta=-amount))

        elif transaction.transaction_type == TransactionType.INCOME:
            destination = self._load_account(uow, transaction.destination_account_id, owner_id)
            self._require_currency(destination, transaction.currency_code)
            deltas.append(BalanceDelta(account_id=destination.id, delta=amount))

        else:
            source = self._load_account(uow, transaction.source_account_id, owner_id)
            destination = self._load_account(uow, transaction.destination_account_id, owner_id)
            self._require_currency(source, transaction.currency_code)

            credited = amount
            if destination.currency_code != source.currency_code:
                owner = uow.ledger.get_owner_settings(owner_id)
                conversion = self._converter.convert(
                    amount,
                    source.currency_code,
                    destination.currency_code,
                    owner.base_currency,
                    uow.rates.get_rates(owner_id),
                    owner_id,
                )
                credited = conversion.converted_amount
                updates["destination_amount"] = credited
                updates["exchange_rate"] = conversion.rate
            else:
                updates["destination_amount"] = None
                updates["exchange_rate"] = None

            deltas.append(BalanceDelta(account_id=source.id, delta=-amount))
            deltas.append(BalanceDelta(account_id=destination.id, delta=credited))

        return transaction.model_copy(update=updates), deltas

    def post(self, uow: UnitOfWork, transaction: Transaction) -> Transaction:
        """Insert the transaction and apply its balance deltas (no commit)."""
        prepared, deltas = self.prepare(uow, transaction)
        saved = uow.ledger.add_transaction(prepared)
        for change in deltas:
            uow.ledger.apply_balance_delta(change.account_id, change.delta)
        return saved

    def reverse(self, uow: UnitOfWork, transaction: Transaction) -> list[BalanceDelta]:
        """Undo a posted transaction's balance effect (no commit)."""
        deltas = []
        if transaction.source_account_id is not None:
            deltas.append(
                BalanceDelta(account_id=transaction.source_account_id, delta=transaction.amount)
            )
        if transaction.destination_account_id is not None:
            deltas.append(
                BalanceDelta(
                    account_id=transaction.destination_account_id,
                    delta=-transaction.credited_amount,
                )
            )
        for change in deltas:
            uow.ledger.apply_balance_delta(change.account_id, change.delta)
        return deltas

    def repost(self, uow: UnitOfWork, previous: Transaction, updated: Transaction) -> Transaction:
        """Swap a posted transaction's balance effect for its edited version's (no commit)."""
        self.reverse(uow, previous)
        prepared, deltas = self.prepare(uow, updated)
        saved = uow.ledger.update_transaction(prepared)
        for change in deltas:
            uow.ledger.apply_balance_delta(change.account_id, change.delta)
        return saved


class LedgerService:
    """
    Owner-facing ledger operations.

    Every method runs its storage work in one unit of work on a worker
    thread, then records the audit event.
    """

    def __init__(
        self,
        uow_factory: Callable[[], UnitOfWork],
        poster: Optional[LedgerPoster] = None,
        validator: Optional[RuleValidator] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._uow_factory = uow_factory
        self._poster = poster or LedgerPoster()
        self._validator = validator or RuleValidator()
        self._audit = audit_logger or AuditLogger()

    async def _run(self, work):
        def unit():
            with self._uow_factory() as uow:
                return work(uow)
        return await asyncio.to_thread(unit)

    # --- owner settings -----------------------------------------------------

    async def get_owner_settings(self, owner_id: int) -> OwnerSettings:
        return await self._run(lambda uow: uow.ledger.get_owner_settings(owner_id))

    async def update_owner_settings(
        self,
        owner_id: int,
        base_currency: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> OwnerSettings:
        """
        Change the owner's base currency and/or reference time zone.

        Existing rules keep their stored next_due; the new zone applies
        from the next computed occurrence onward. A base currency change
        re-expresses the stored rates against the new base.

        Raises:
            LedgerValidationError: Unknown currency, or rates exist but none
                for the new base, so they cannot be re-expressed
        """
        def work(uow: UnitOfWork) -> OwnerSettings:
            current = uow.ledger.get_owner_settings(owner_id)
            updated = OwnerSettings(
                owner_id=owner_id,
                base_currency=base_currency or current.base_currency,
                timezone=timezone or current.timezone,
            )
            if uow.ledger.get_currency(updated.base_currency) is None:
                raise LedgerValidationError(f"Currency {updated.base_currency} is not supported")
            if updated.base_currency != current.base_currency:
                self._rebase_rates(uow, owner_id, current.base_currency, updated.base_currency)
            return uow.ledger.save_owner_settings(updated)

        settings = await self._run(work)
        logger.info(
            "owner_settings_updated",
            owner_id=owner_id,
            base_currency=settings.base_currency,
            timezone=settings.timezone,
        )
        return settings

    def _rebase_rates(self, uow: UnitOfWork, owner_id: int, old_base: str, new_base: str) -> None:
        rates = uow.rates.get_rates(owner_id)
        if not rates:
            return
        pivot = rates.get(new_base)
        if pivot is None:
            raise LedgerValidationError(
                f"Set a rate for {new_base} before making it the base currency"
            )

        # rate_to_base[X] was old-base units per X; divide by the new base's old rate
        uow.rates.delete_rate(owner_id, new_base)
        for code, rate in rates.items():
            if code != new_base:
                uow.rates.set_rate(
                    ExchangeRate(owner_id=owner_id, currency_code=code, rate_to_base=rate / pivot)
                )
        uow.rates.set_rate(
            ExchangeRate(owner_id=owner_id, currency_code=old_base, rate_to_base=Decimal(1) / pivot)
        )
        logger.info(
            "exchange_rates_rebased",
            owner_id=owner_id,
            old_base=old_base,
            new_base=new_base,
            rates=len(rates),
        )

    # --- currencies and rates -----------------------------------------------

    async def register_currency(self, code: str, name: str, symbol: str) -> SupportedCurrency:
        currency = SupportedCurrency(code=code, name=name, symbol=symbol)
        return await self._run(lambda uow: uow.ledger.add_currency(currency))

    async def list_currencies(self) -> list[SupportedCurrency]:
        return await self._run(lambda uow: uow.ledger.list_currencies())

    async def set_exchange_rate(
        self,
        owner_id: int,
        currency_code: str,
        rate_to_base: Decimal,
    ) -> ExchangeRate:
        """
        Store how many base units one unit of `currency_code` is worth.

        Raises:
            LedgerValidationError: Unknown currency, or the owner's base
                currency (whose rate is implicitly 1)
        """
        rate = ExchangeRate(owner_id=owner_id, currency_code=currency_code, rate_to_base=rate_to_base)

        def work(uow: UnitOfWork) -> ExchangeRate:
            if uow.ledger.get_currency(rate.currency_code) is None:
                raise LedgerValidationError(f"Currency {rate.currency_code} is not supported")
            owner = uow.ledger.get_owner_settings(owner_id)
            if rate.currency_code == owner.base_currency:
                raise LedgerValidationError(
                    f"{rate.currency_code} is the base currency; its rate is always 1"
                )
            return uow.rates.set_rate(rate)

        saved = await self._run(work)
        logger.info(
            "exchange_rate_set",
            owner_id=owner_id,
            currency_code=saved.currency_code,
            rate_to_base=str(saved.rate_to_base),
        )
        return saved

    async def remove_exchange_rate(self, owner_id: int, currency_code: str) -> bool:
        return await self._run(lambda uow: uow.rates.delete_rate(owner_id, currency_code))

    async def list_exchange_rates(self, owner_id: int) -> list[ExchangeRate]:
        return await self._run(lambda uow: uow.rates.list_rates(owner_id))

    # --- accounts -----------------------------------------------------------

    async def open_account(
        self,
        owner_id: int,
        name: str,
        currency_code: str,
        initial_balance: Decimal = Decimal("0"),
        account_type: str = "general",
        category: AccountCategory = AccountCategory.ASSET,
    ) -> Account:
        """Create an account; its current balance starts at `initial_balance`."""
        account = Account(
            owner_id=owner_id,
            name=name,
            account_type=account_type,
            category=category,
            currency_code=currency_code,
            current_balance=initial_balance,
        )

        def work(uow: UnitOfWork) -> Account:
            if uow.ledger.get_currency(account.currency_code) is None:
                raise LedgerValidationError(f"Currency {account.currency_code} is not supported")
            return uow.ledger.add_account(account)

        return await self._run(work)

    async def get_account(self, owner_id: int, account_id: int) -> Account:
        account = await self._run(lambda uow: uow.ledger.get_account(account_id, owner_id=owner_id))
        if account is None:
            raise NotFoundError(f"Account {account_id} not found")
        return account

    async def list_accounts(self, owner_id: int) -> list[Account]:
        return await self._run(lambda uow: uow.ledger.list_accounts(owner_id))

    async def update_account(
        self,
        owner_id: int,
        account_id: int,
        changes: AccountUpdate,
    ) -> Account:
        """
        Rename an account or change its type, category or currency.

        The balance is never edited here. The currency can only change while
        no posted transaction references the account, since the balance is
        expressed in it.

        Raises:
            NotFoundError: If the account does not exist
            DuplicateError: If the new name is already used by the owner
            AccountInUseError: Currency change on an account with transactions
            LedgerValidationError: Unsupported currency
        """
        def work(uow: UnitOfWork) -> Account:
            current = uow.ledger.get_account(account_id, owner_id=owner_id)
            if current is None:
                raise NotFoundError(f"Account {account_id} not found")
            merged = current.model_dump()
            merged.update(changes.model_dump(exclude_unset=True))
            updated = Account(**merged)

            if updated.currency_code != current.currency_code:
                if uow.ledger.get_currency(updated.currency_code) is None:
                    raise LedgerValidationError(f"Currency {updated.currency_code} is not supported")
                if uow.ledger.account_has_transactions(account_id):
                    raise AccountInUseError(
                        f"Account {account_id} has posted transactions; its currency is fixed"
                    )
            return uow.ledger.update_account(updated)

        account = await self._run(work)
        logger.info(
            "account_updated",
            owner_id=owner_id,
            account_id=account_id,
            changed_fields=sorted(changes.model_fields_set),
        )
        return account

    async def delete_account(self, owner_id: int, account_id: int) -> bool:
        """
        Delete an account that no posted transaction references.

        Rules that still point at the account are left alone; the scheduler
        deactivates them with a visible reason the next time they fire.

        Raises:
            NotFoundError: If the account does not exist
            AccountInUseError: If transactions reference the account
        """
        def work(uow: UnitOfWork) -> bool:
            if uow.ledger.get_account(account_id, owner_id=owner_id) is None:
                raise NotFoundError(f"Account {account_id} not found")
            if uow.ledger.account_has_transactions(account_id):
                raise AccountInUseError(
                    f"Account {account_id} has posted transactions and cannot be deleted"
                )
            return uow.ledger.delete_account(account_id, owner_id)

        return await self._run(work)

    # --- categories ---------------------------------------------------------

    async def create_category(self, owner_id: int, name: str, kind: CategoryKind) -> Category:
        category = Category(owner_id=owner_id, name=name, kind=kind)
        return await self._run(lambda uow: uow.ledger.add_category(category))

    async def list_categories(self, owner_id: int) -> list[Category]:
        return await self._run(lambda uow: uow.ledger.list_categories(owner_id))

    async def delete_category(self, owner_id: int, category_id: int) -> bool:
        """Delete a category; transactions that used it become uncategorized."""
        def work(uow: UnitOfWork) -> bool:
            if not uow.ledger.delete_category(category_id, owner_id):
                raise NotFoundError(f"Category {category_id} not found")
            return True

        return await self._run(work)

    # --- transactions -------------------------------------------------------

    async def record_transaction(self, transaction: Transaction) -> Transaction:
        """
        Post a manual transaction.

        Raises:
            RuleValidationError: References or currencies don't fit the owner's ledger
            MissingExchangeRateError: Cross-currency transfer without a rate
        """
        if transaction.scheduled_rule_id is not None:
            raise LedgerValidationError("Manual entries cannot reference a scheduled rule")

        def work(uow: UnitOfWork) -> Transaction:
            self._validator.validate(uow, transaction.owner_id, transaction)
            return self._poster.post(uow, transaction)

        saved = await self._run(work)
        await self._audit.log_transaction_recorded(
            transaction_id=saved.id,
            owner_id=saved.owner_id,
            transaction_type=saved.transaction_type.value,
            amount=saved.amount,
            currency_code=saved.currency_code,
        )
        return saved

    async def update_transaction(
        self,
        owner_id: int,
        transaction_id: int,
        changes: TransactionUpdate,
    ) -> Transaction:
        """
        Edit a posted transaction.

        The old balance effect is reversed and the edited version posted in
        the same unit of work, so balances never reflect both or neither.
        A transaction generated by a rule keeps its occurrence link.

        Raises:
            NotFoundError: If the transaction does not exist
            RuleValidationError: The edited version doesn't fit the ledger
            MissingExchangeRateError: Edited into a cross-currency transfer without a rate
        """
        changed = sorted(changes.model_fields_set)

        def work(uow: UnitOfWork) -> Transaction:
            previous = uow.ledger.get_transaction(transaction_id, owner_id)
            if previous is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            merged = previous.model_dump(exclude={"destination_amount", "exchange_rate"})
            merged.update(changes.model_dump(exclude_unset=True))
            updated = Transaction(**merged)

            self._validator.validate(uow, owner_id, updated)
            return self._poster.repost(uow, previous, updated)

        saved = await self._run(work)
        await self._audit.log_transaction_updated(
            transaction_id=saved.id,
            owner_id=owner_id,
            changed_fields=changed,
            amount=saved.amount,
            currency_code=saved.currency_code,
        )
        return saved

    async def delete_transaction(self, owner_id: int, transaction_id: int) -> bool:
        """Delete a transaction and revert its balance effect."""
        def work(uow: UnitOfWork) -> bool:
            transaction = uow.ledger.get_transaction(transaction_id, owner_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found")
            self._poster.reverse(uow, transaction)
            return uow.ledger.delete_transaction(transaction_id, owner_id)

        deleted = await self._run(work)
        await self._audit.log_transaction_deleted(transaction_id, owner_id)
        return deleted

    async def list_transactions(
        self,
        owner_id: int,
        scheduled_rule_id: Optional[int] = None,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> list[Transaction]:
        return await self._run(
            lambda uow: uow.ledger.list_transactions(
                owner_id,
                scheduled_rule_id=scheduled_rule_id,
                date_from=date_from,
                date_to=date_to,
            )
        )

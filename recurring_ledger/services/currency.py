"""
Currency Conversion

The single place where one currency becomes another.

Rates are owner-specific and expressed against the owner's base currency:
rate_to_base is how many base units one unit of the currency is worth.
The base currency itself has an implicit rate of 1 and no stored row.

    base -> X   : amount / rate[X]
    X -> base   : amount * rate[X]
    X -> Y      : amount * rate[X] / rate[Y]   (through the base)

DESIGN DECISION: There is no fallback to a global or system rate.
A missing owner rate raises MissingExchangeRateError, which the scheduler
treats as transient so the owner can add the rate and the next tick
succeeds.
"""

from decimal import Decimal, localcontext
from typing import Mapping, Optional

from pydantic import BaseModel

from recurring_ledger.config import LedgerSettings, get_settings
from recurring_ledger.services.errors import MissingExchangeRateError


class ConversionResult(BaseModel):
    """Outcome of converting an amount between two currencies."""

    original_amount: Decimal
    converted_amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal
    is_converted: bool


class CurrencyConverter:
    """
    Converts amounts using an owner's rate table.

    Stateless apart from the ledger's rounding policy, so one instance can
    be shared by every worker thread.
    """

    def __init__(self, settings: Optional[LedgerSettings] = None):
        self._settings = settings or get_settings().ledger

    def quantize_amount(self, amount: Decimal) -> Decimal:
        """Round to the ledger's fixed-point scale."""
        return Decimal(amount).quantize(
            self._settings.amount_quantum,
            rounding=self._settings.rounding,
        )

    def quantize_rate(self, rate: Decimal) -> Decimal:
        return Decimal(rate).quantize(
            self._settings.rate_quantum,
            rounding=self._settings.rounding,
        )

    def _rate_for(
        self,
        currency: str,
        base_currency: str,
        rates: Mapping[str, Decimal],
        owner_id: int,
    ) -> Decimal:
        if currency == base_currency:
            return Decimal(1)
        rate = rates.get(currency)
        if rate is None:
            raise MissingExchangeRateError(owner_id, currency)
        return Decimal(rate)

    def convert(
        self,
        amount: Decimal,
        from_currency: str,
        to_currency: str,
        base_currency: str,
        rates: Mapping[str, Decimal],
        owner_id: int,
    ) -> ConversionResult:
        """
        Convert `amount` from one currency to another.

        Raises:
            MissingExchangeRateError: If a non-base currency has no rate
        """
        from_currency = from_currency.upper()
        to_currency = to_currency.upper()
        base_currency = base_currency.upper()

        if from_currency == to_currency:
            return ConversionResult(
                original_amount=amount,
                converted_amount=amount,
                from_currency=from_currency,
                to_currency=to_currency,
                rate=Decimal(1),
                is_converted=False,
            )

        from_rate = self._rate_for(from_currency, base_currency, rates, owner_id)
        to_rate = self._rate_for(to_currency, base_currency, rates, owner_id)

        with localcontext() as ctx:
            ctx.prec = 34
            converted = Decimal(amount) * from_rate / to_rate
            effective_rate = from_rate / to_rate

        return ConversionResult(
            original_amount=amount,
            converted_amount=self.quantize_amount(converted),
            from_currency=from_currency,
            to_currency=to_currency,
            rate=self.quantize_rate(effective_rate),
            is_converted=True,
        )

    def within_tolerance(self, expected: Decimal, actual: Decimal) -> bool:
        """Whether two amounts agree within the configured conversion tolerance."""
        return abs(Decimal(expected) - Decimal(actual)) <= self._settings.conversion_tolerance

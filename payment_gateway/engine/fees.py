"""
Processor fee computation.

    fee = amount * percentage / 100 + fixed

clamped to the schedule's minimum / maximum and to the amount itself, then
rounded to the currency's minor unit with ROUND_HALF_EVEN. The fixed part is
only added when the schedule is denominated in the payment currency; a
percentage applies to any currency.

Pure: never touches the ledger. Called once per payment and the result is
frozen into the transaction.
"""

from decimal import ROUND_HALF_EVEN, Decimal
from typing import Iterable

from payment_gateway.errors import UnknownProviderError
from payment_gateway.models.domain import Fee, FeeSchedule, ProviderConfig
from payment_gateway.routing.provider_catalog import currency_exponent


def quantize_amount(amount: Decimal, currency: str) -> Decimal:
    """Round to the currency's minor-unit precision (banker's rounding)."""
    exponent = Decimal(1).scaleb(-currency_exponent(currency))
    return amount.quantize(exponent, rounding=ROUND_HALF_EVEN)


def compute_fee(schedule: FeeSchedule, amount: Decimal, currency: str) -> Fee:
    currency = currency.upper()
    fee = amount * schedule.percentage / Decimal(100)
    if schedule.currency.upper() == currency:
        fee += schedule.fixed
        if schedule.minimum is not None:
            fee = max(fee, schedule.minimum)
        if schedule.maximum is not None:
            fee = min(fee, schedule.maximum)

    # Never take more than the payment itself
    fee = min(fee, amount)
    return Fee(amount=quantize_amount(fee, currency), currency=currency)


class FeeCalculator:
    """Looks up a provider's schedule and computes the fee for a payment."""

    def __init__(self, providers: Iterable[ProviderConfig]):
        self._providers = {p.name: p for p in providers}

    def compute(self, provider_name: str, amount: Decimal, currency: str) -> Fee:
        config = self._providers.get(provider_name)
        if config is None:
            raise UnknownProviderError(provider_name)
        return compute_fee(config.schedule_for(currency), amount, currency)

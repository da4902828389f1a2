"""Tests for processor fee computation."""

from decimal import Decimal

import pytest

from payment_gateway.engine.fees import FeeCalculator, compute_fee, quantize_amount
from payment_gateway.errors import UnknownProviderError
from payment_gateway.models.domain import FeeSchedule
from payment_gateway.routing.provider_catalog import DEFAULT_PROVIDERS

calculator = FeeCalculator(DEFAULT_PROVIDERS)


class TestPayPalFees:
    def test_usd_standard_rate(self):
        """2.9% + $0.30 on $100.00."""
        fee = calculator.compute("paypal", Decimal("100.00"), "USD")
        assert fee.amount == Decimal("3.20")
        assert fee.currency == "USD"

    def test_eur_schedule(self):
        fee = calculator.compute("paypal", Decimal("100.00"), "EUR")
        assert fee.amount == Decimal("3.75")
        assert fee.currency == "EUR"

    def test_jpy_has_no_decimals(self):
        fee = calculator.compute("paypal", Decimal("1000"), "JPY")
        assert fee.amount == Decimal("76")
        assert fee.amount.as_tuple().exponent == 0

    def test_maximum_cap(self):
        fee = calculator.compute("paypal", Decimal("10000.00"), "USD")
        assert fee.amount == Decimal("100.00")

    def test_currency_case_insensitive(self):
        assert calculator.compute("paypal", Decimal("100.00"), "usd").amount == Decimal("3.20")


class TestPaystackFees:
    def test_ngn_local_rate(self):
        """1.5% + NGN 100."""
        fee = calculator.compute("paystack", Decimal("10000.00"), "NGN")
        assert fee.amount == Decimal("250.00")

    def test_ngn_cap(self):
        fee = calculator.compute("paystack", Decimal("1000000.00"), "NGN")
        assert fee.amount == Decimal("2000.00")

    def test_ghs_percentage_only(self):
        fee = calculator.compute("paystack", Decimal("100.00"), "GHS")
        assert fee.amount == Decimal("1.95")

    def test_fixed_fee_skipped_for_other_currency(self):
        """The NGN 100 fixed fee is not added to a USD charge."""
        fee = calculator.compute("paystack", Decimal("100.00"), "USD")
        assert fee.amount == Decimal("3.90")
        assert fee.currency == "USD"


class TestRounding:
    schedule = FeeSchedule(percentage=Decimal("1"), fixed=Decimal("0"), currency="USD")

    def test_half_even_rounds_down_to_even(self):
        assert compute_fee(self.schedule, Decimal("0.50"), "USD").amount == Decimal("0.00")

    def test_half_even_rounds_up_to_even(self):
        assert compute_fee(self.schedule, Decimal("1.50"), "USD").amount == Decimal("0.02")

    def test_quantize_three_decimal_currency(self):
        assert quantize_amount(Decimal("1.23456"), "KWD") == Decimal("1.235")


class TestInvariants:
    def test_fee_never_exceeds_amount(self):
        fee = calculator.compute("paypal", Decimal("0.10"), "USD")
        assert fee.amount == Decimal("0.10")

    def test_minimum_applies(self):
        schedule = FeeSchedule(
            percentage=Decimal("1"), fixed=Decimal("0"), currency="USD", minimum=Decimal("0.50")
        )
        assert compute_fee(schedule, Decimal("10.00"), "USD").amount == Decimal("0.50")

    @pytest.mark.parametrize("amount", ["0.01", "1.00", "19.99", "100.00", "2500.55", "999999.99"])
    @pytest.mark.parametrize("provider,currency", [
        ("paypal", "USD"), ("paypal", "EUR"), ("paystack", "NGN"), ("paystack", "ZAR"),
    ])
    def test_net_plus_fee_is_amount(self, provider, currency, amount):
        amount = Decimal(amount)
        fee = calculator.compute(provider, amount, currency)
        net = amount - fee.amount
        assert net >= 0
        assert net + fee.amount == amount

    def test_deterministic(self):
        first = calculator.compute("paystack", Decimal("12345.67"), "NGN")
        second = calculator.compute("paystack", Decimal("12345.67"), "NGN")
        assert first == second

    def test_unknown_provider(self):
        with pytest.raises(UnknownProviderError):
            calculator.compute("stripe", Decimal("10.00"), "USD")

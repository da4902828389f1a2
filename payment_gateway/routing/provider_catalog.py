"""
Static provider catalog and currency precision table.

Describes which currencies and countries each processor serves and what it
charges. Loaded once at startup and never mutated afterwards; historical
transactions keep the fee that was frozen into them, so editing a schedule
here never rewrites the past.

Coverage:
  - PayPal: global card / wallet checkout in major currencies
  - Paystack: African markets (NG, GH, ZA, KE, CI) plus USD
"""

from decimal import Decimal

from payment_gateway.models.domain import FeeSchedule, ProviderConfig


# ─── Minor-unit exponents (ISO 4217) ───────────────────────────────────
# Anything not listed has two decimal places.
CURRENCY_EXPONENTS: dict[str, int] = {
    "JPY": 0,
    "KRW": 0,
    "UGX": 0,
    "HUF": 0,  # PayPal only accepts whole forints
    "TWD": 0,  # PayPal only accepts whole dollars
    "BHD": 3,
    "KWD": 3,
    "OMR": 3,
}


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), 2)


PAYPAL = ProviderConfig(
    name="paypal",
    display_name="PayPal",
    active=True,
    supported_currencies=frozenset({
        "USD", "EUR", "GBP", "CAD", "AUD", "JPY", "CHF", "SGD",
        "HKD", "NZD", "SEK", "NOK", "DKK", "PLN", "MXN",
    }),
    supported_countries=frozenset({
        "US", "CA", "MX", "GB", "IE", "DE", "FR", "ES", "IT", "NL", "BE",
        "AT", "PT", "FI", "SE", "NO", "DK", "PL", "CH", "AU", "NZ", "JP",
        "SG", "HK",
    }),
    # Standard domestic card rate
    fee_schedule=FeeSchedule(
        percentage=Decimal("2.9"),
        fixed=Decimal("0.30"),
        currency="USD",
        maximum=Decimal("100.00"),
    ),
    fee_schedules={
        "EUR": FeeSchedule(percentage=Decimal("3.4"), fixed=Decimal("0.35"), currency="EUR"),
        "GBP": FeeSchedule(percentage=Decimal("2.9"), fixed=Decimal("0.30"), currency="GBP"),
        "JPY": FeeSchedule(percentage=Decimal("3.6"), fixed=Decimal("40"), currency="JPY"),
    },
)

PAYSTACK = ProviderConfig(
    name="paystack",
    display_name="Paystack",
    active=True,
    supported_currencies=frozenset({"NGN", "GHS", "ZAR", "KES", "USD"}),
    supported_countries=frozenset({"NG", "GH", "ZA", "KE", "CI"}),
    # International cards
    fee_schedule=FeeSchedule(
        percentage=Decimal("3.9"),
        fixed=Decimal("100"),
        currency="NGN",
    ),
    fee_schedules={
        # Local cards: 1.5% + NGN 100, capped at NGN 2,000
        "NGN": FeeSchedule(
            percentage=Decimal("1.5"),
            fixed=Decimal("100"),
            currency="NGN",
            maximum=Decimal("2000"),
        ),
        "GHS": FeeSchedule(percentage=Decimal("1.95"), fixed=Decimal("0"), currency="GHS"),
        "ZAR": FeeSchedule(percentage=Decimal("2.9"), fixed=Decimal("1.00"), currency="ZAR"),
        "KES": FeeSchedule(percentage=Decimal("2.9"), fixed=Decimal("0"), currency="KES"),
    },
)

DEFAULT_PROVIDERS: tuple[ProviderConfig, ...] = (PAYPAL, PAYSTACK)

"""
Payment and refund input validation.

Before a provider is selected or contacted, we verify:
  1. Amount is a Decimal, positive, and below the configured maximum
  2. Currency is a three-letter ISO 4217 code
  3. Customer email is syntactically valid
  4. A description is present
  5. Amount precision fits the currency's minor unit

Failures raise ValidationError, which never reaches a provider.
"""

import re
from decimal import Decimal
from typing import Optional

from payment_gateway.errors import ValidationError
from payment_gateway.models.domain import PaymentIntent, RefundIntent
from payment_gateway.routing.provider_catalog import currency_exponent

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
CURRENCY_PATTERN = re.compile(r"^[A-Z]{3}$")


def validate_amount(amount: Optional[Decimal], currency: str, maximum: Optional[Decimal] = None) -> None:
    if not isinstance(amount, Decimal):
        raise ValidationError(f"Amount must be a Decimal, got {type(amount).__name__}")
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid amount: {amount}")
    if maximum is not None and amount > maximum:
        raise ValidationError(f"Amount {amount} exceeds maximum of {maximum}")
    minor_unit = Decimal(1).scaleb(-currency_exponent(currency))
    if amount != amount.quantize(minor_unit):
        raise ValidationError(
            f"Amount {amount} has more precision than {currency} allows"
        )


def validate_intent(intent: PaymentIntent, max_amount: Optional[Decimal] = None) -> None:
    """
    Check whether a payment intent may be submitted.

    Raises:
        ValidationError: describing the first failed check.
    """
    currency = (intent.currency or "").strip().upper()
    if not currency:
        raise ValidationError("Currency is required")
    if not CURRENCY_PATTERN.match(currency):
        raise ValidationError(f"Invalid currency code: {intent.currency}")

    validate_amount(intent.amount, currency, max_amount)

    email = (intent.customer_email or "").strip()
    if not email or not EMAIL_PATTERN.match(email):
        raise ValidationError(f"Invalid customer email: {intent.customer_email}")

    if not (intent.description or "").strip():
        raise ValidationError("Description is required")


def validate_refund(intent: RefundIntent, currency: str) -> None:
    if not intent.transaction_id:
        raise ValidationError("Transaction id is required")
    if intent.amount is not None:
        validate_amount(intent.amount, currency)

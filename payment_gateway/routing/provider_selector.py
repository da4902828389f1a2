"""
Payment provider routing.

Selects the processor for a payment based on:
  1. Explicit preference (if that provider is active and takes the currency)
  2. Currency support
  3. Customer country, when known

Routing priority:
  - Preferred provider that supports the currency → preferred provider
  - First active provider (in priority order) that supports the currency
    and, if the country is known, serves that country
  - Nothing matches → configured default provider. The adapter then rejects
    an unsupported currency explicitly instead of the selector hiding it.

With the default priority (PayPal, Paystack) this sends NGN/GHS/ZAR/KES and
African customers to Paystack and everything else to PayPal.
"""

from typing import Iterable, Optional

from payment_gateway.models.domain import ProviderConfig


def select_provider(
    providers: Iterable[ProviderConfig],
    currency: str,
    country: Optional[str] = None,
    preferred: Optional[str] = None,
    default: str = "paypal",
) -> str:
    """
    Select the provider for a payment.

    Args:
        providers: Provider configs in priority order.
        currency: ISO 4217 code of the payment.
        country: ISO 3166-1 alpha-2 country of the customer, if known.
        preferred: Provider explicitly requested by the caller. Used only
            when it can actually take the payment.
        default: Provider to fall back on when nothing matches.

    Returns:
        The provider name.
    """
    currency = (currency or "").strip().upper()
    country = (country or "").strip().upper() or None
    active = [p for p in providers if p.active]

    # Priority 1: caller preference
    if preferred:
        for p in active:
            if p.name == preferred and currency in p.supported_currencies:
                return p.name

    # Priority 2: first provider covering currency (and country if known)
    for p in active:
        if currency not in p.supported_currencies:
            continue
        if country and p.supported_countries and country not in p.supported_countries:
            continue
        return p.name

    # Fallback: default provider
    return default

"""Tests for provider routing."""

from dataclasses import replace

from payment_gateway.routing.provider_catalog import DEFAULT_PROVIDERS, PAYPAL, PAYSTACK
from payment_gateway.routing.provider_selector import select_provider


class TestCurrencyRouting:
    def test_usd_goes_to_paypal(self):
        assert select_provider(DEFAULT_PROVIDERS, "USD") == "paypal"

    def test_eur_goes_to_paypal(self):
        assert select_provider(DEFAULT_PROVIDERS, "EUR", "DE") == "paypal"

    def test_african_currencies_go_to_paystack(self):
        for currency in ["NGN", "GHS", "ZAR", "KES"]:
            assert select_provider(DEFAULT_PROVIDERS, currency) == "paystack", currency

    def test_lowercase_currency(self):
        assert select_provider(DEFAULT_PROVIDERS, "ngn") == "paystack"


class TestCountryRouting:
    def test_usd_from_nigeria_goes_to_paystack(self):
        """PayPal takes USD but does not serve NG."""
        assert select_provider(DEFAULT_PROVIDERS, "USD", "NG") == "paystack"

    def test_usd_from_us(self):
        assert select_provider(DEFAULT_PROVIDERS, "USD", "us") == "paypal"


class TestPreference:
    def test_preferred_provider_honoured(self):
        assert select_provider(DEFAULT_PROVIDERS, "USD", preferred="paystack") == "paystack"

    def test_preferred_ignored_when_currency_unsupported(self):
        assert select_provider(DEFAULT_PROVIDERS, "EUR", preferred="paystack") == "paypal"

    def test_inactive_preferred_ignored(self):
        providers = (PAYPAL, replace(PAYSTACK, active=False))
        assert select_provider(providers, "USD", "NG", preferred="paystack") == "paypal"


class TestFallback:
    def test_unsupported_currency_falls_back_to_default(self):
        assert select_provider(DEFAULT_PROVIDERS, "XOF") == "paypal"

    def test_custom_default(self):
        assert select_provider(DEFAULT_PROVIDERS, "XOF", default="paystack") == "paystack"

    def test_priority_order(self):
        """Both take USD; the first in priority order wins."""
        assert select_provider((PAYSTACK, PAYPAL), "USD") == "paystack"

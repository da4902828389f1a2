from payment_gateway.routing.provider_catalog import DEFAULT_PROVIDERS
from payment_gateway.routing.provider_selector import select_provider

__all__ = ["DEFAULT_PROVIDERS", "select_provider"]

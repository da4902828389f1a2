"""
Abstract payment provider interface.

Every processor (PayPal, Paystack) implements this interface. Adapters
translate the internal model into provider calls and translate provider
responses and webhooks back, so nothing outside ``providers/`` ever sees
provider-shaped data. Adapters share no state with each other and never
write to the ledger; they only return proposed outcomes.
"""

import hashlib
import hmac
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional

import httpx

from payment_gateway.errors import PermanentError, ProviderError, RateLimitError
from payment_gateway.models.domain import PaymentIntent, RefundRecord, Transaction
from payment_gateway.models.enums import RefundStatus, TransactionStatus
from payment_gateway.routing.provider_catalog import currency_exponent

logger = logging.getLogger("payment_gateway.providers")


@dataclass
class AdapterResult:
    """Normalized outcome of a create or status call."""

    provider_payment_id: Optional[str]
    status: TransactionStatus
    redirect_url: Optional[str] = None
    error: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class RefundResult:
    provider_refund_id: Optional[str]
    status: RefundStatus
    error: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class NormalizedWebhook:
    """
    Provider webhook reduced to what the ledger needs.

    ``status`` is None for events that carry no payment status change.
    ``provider_refund_id``/``refund_status`` are set for refund lifecycle events;
    ``refund_reference`` is our own refund id when the provider echoes it back.
    """

    event_id: str
    event_type: str
    transaction_id: Optional[str] = None
    provider_payment_id: Optional[str] = None
    status: Optional[TransactionStatus] = None
    error: Optional[str] = None
    provider_refund_id: Optional[str] = None
    refund_status: Optional[RefundStatus] = None
    refund_reference: Optional[str] = None
    refund_amount: Optional[Decimal] = None
    raw: dict[str, Any] = field(default_factory=dict)


def to_minor_units(amount: Decimal, currency: str) -> int:
    """Major units (Decimal) to the provider's integer minor units."""
    scaled = amount.scaleb(currency_exponent(currency))
    if scaled != scaled.to_integral_value():
        raise PermanentError(f"Amount {amount} is not representable in {currency} minor units")
    return int(scaled)


def from_minor_units(amount: int, currency: str) -> Decimal:
    """Provider integer minor units to major units (Decimal)."""
    return Decimal(amount).scaleb(-currency_exponent(currency))


def hmac_hexdigest(secret: str, body: bytes, digestmod) -> str:
    return hmac.new(secret.encode("utf-8"), body, digestmod).hexdigest()


def verify_hmac(secret: str, body: bytes, signature: str, digestmod=hashlib.sha256) -> bool:
    """Constant-time comparison of a hex HMAC over the raw body."""
    if not secret or not signature:
        return False
    expected = hmac_hexdigest(secret, body, digestmod)
    return hmac.compare_digest(expected, signature.strip().lower())


class PaymentProvider(ABC):
    """Abstract base class for payment providers."""

    # Whether create_refund honours an idempotency key (refund.id)
    idempotent_refunds: bool = True

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier (e.g. 'paypal')."""
        ...

    @abstractmethod
    async def create_payment(self, transaction_id: str, intent: PaymentIntent) -> AdapterResult:
        """
        Submit a payment to the provider.

        ``transaction_id`` must be sent as the provider's idempotency or
        reference key so that a retried call never creates a second charge.

        Raises:
            ProviderError: On transient failure (may be retried).
            PermanentError: On non-retriable failure (declined, bad request).
        """
        ...

    @abstractmethod
    async def get_payment_status(self, transaction: Transaction) -> AdapterResult:
        """Ask the provider for the authoritative status of a payment."""
        ...

    @abstractmethod
    async def create_refund(self, transaction: Transaction, refund: RefundRecord) -> RefundResult:
        """
        Refund ``refund.amount`` of ``transaction``.

        ``refund.id`` is the idempotency key for the refund call.
        """
        ...

    @abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        """Check the signature over the raw, unparsed body."""
        ...

    @abstractmethod
    def normalize_webhook_payload(self, raw_body: bytes) -> NormalizedWebhook:
        """Parse a verified webhook body into the internal model."""
        ...

    @abstractmethod
    def map_provider_status(self, provider_status: str) -> TransactionStatus:
        """
        Translate the provider's status vocabulary into the internal enum.

        Raises:
            ProviderError: For a status this adapter does not know.
        """
        ...

    async def aclose(self) -> None:
        return None


class HttpPaymentProvider(PaymentProvider):
    """
    Shared HTTP plumbing for real provider adapters.

    Maps transport failures and status codes onto the provider error
    hierarchy so the retry helper can tell transient from permanent.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self._base_url, timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> httpx.Response:
        try:
            response = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.TimeoutException as e:
            raise ProviderError(f"{self.name} timed out: {e}", status_code=504, provider=self.name) from e
        except httpx.TransportError as e:
            raise ProviderError(f"{self.name} unreachable: {e}", status_code=503, provider=self.name) from e

        logger.debug("%s %s %s -> %d", self.name, method, path, response.status_code)
        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                f"{self.name} rate limited",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
                provider=self.name,
            )
        if response.status_code >= 500:
            raise ProviderError(
                f"{self.name} server error {response.status_code}",
                status_code=response.status_code,
                provider=self.name,
            )
        return response

    def _permanent(self, response: httpx.Response, message: str) -> PermanentError:
        return PermanentError(
            f"{message}: {response.text[:300]}",
            status_code=response.status_code,
            provider=self.name,
        )

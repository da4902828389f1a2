"""
Paystack adapter.

  - Auth: static secret key as bearer token
  - Units: integer minor units (kobo, pesewas, cents)
  - Idempotency: ``reference`` = our transaction id; Paystack refuses a
    second transaction with the same reference, and we resolve that reply
    by verifying the reference instead of charging again
  - Webhooks: ``x-paystack-signature`` = HMAC-SHA512 of the raw body, keyed
    with the secret key
  - Refunds carry no idempotency key, so they are never retried
"""

import hashlib
import json
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError as PydanticValidationError

from payment_gateway.errors import PermanentError, ProviderError
from payment_gateway.models.domain import PaymentIntent, ProviderConfig, RefundRecord, Transaction
from payment_gateway.models.enums import RefundStatus, TransactionStatus
from payment_gateway.providers.base import (
    AdapterResult,
    HttpPaymentProvider,
    NormalizedWebhook,
    RefundResult,
    from_minor_units,
    to_minor_units,
    verify_hmac,
)

PAYSTACK_STATUS_MAP: dict[str, TransactionStatus] = {
    "success": TransactionStatus.COMPLETED,
    "failed": TransactionStatus.FAILED,
    "abandoned": TransactionStatus.CANCELLED,
    "reversed": TransactionStatus.REFUNDED,
    "ongoing": TransactionStatus.PENDING,
    "pending": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "queued": TransactionStatus.PENDING,
}

PAYSTACK_REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "pending": RefundStatus.PENDING,
    "processing": RefundStatus.PENDING,
    "needs-attention": RefundStatus.PENDING,
    "processed": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
}

DUPLICATE_REFERENCE = "duplicate transaction reference"


class PaystackEnvelope(BaseModel):
    status: bool
    message: str = ""
    data: Optional[dict[str, Any]] = None


class PaystackInitData(BaseModel):
    authorization_url: str
    access_code: str
    reference: str


class PaystackTransaction(BaseModel):
    id: int
    reference: str
    status: str
    amount: int
    currency: str
    gateway_response: Optional[str] = None


class PaystackRefund(BaseModel):
    id: int
    status: str


class PaystackWebhook(BaseModel):
    event: str
    data: dict[str, Any] = {}


class PaystackAdapter(HttpPaymentProvider):
    idempotent_refunds = False

    def __init__(
        self,
        config: ProviderConfig,
        secret_key: str,
        base_url: str = "https://api.paystack.co",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, timeout=timeout, client=client)
        self._config = config
        self._secret_key = secret_key

    @property
    def name(self) -> str:
        return "paystack"

    @property
    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json",
        }

    def _envelope(self, response: httpx.Response) -> PaystackEnvelope:
        try:
            return PaystackEnvelope.model_validate(response.json())
        except (PydanticValidationError, ValueError) as e:
            raise ProviderError(f"Malformed Paystack response: {e}", provider=self.name) from e

    # ─── Payments ──────────────────────────────────────────────────────

    async def create_payment(self, transaction_id: str, intent: PaymentIntent) -> AdapterResult:
        currency = intent.currency.upper()
        if currency not in self._config.supported_currencies:
            raise PermanentError(f"Paystack does not support currency {currency}", provider=self.name)

        metadata: dict[str, Any] = {**intent.metadata, "transaction_id": transaction_id}
        if intent.cancel_url:
            metadata["cancel_action"] = intent.cancel_url
        body: dict[str, Any] = {
            "email": intent.customer_email,
            "amount": to_minor_units(intent.amount, currency),
            "currency": currency,
            "reference": transaction_id,
            "metadata": metadata,
        }
        if intent.return_url:
            body["callback_url"] = intent.return_url

        response = await self._request(
            "POST", "/transaction/initialize", json=body, headers=self._headers
        )
        envelope = self._envelope(response)
        if not envelope.status or response.status_code >= 400:
            if DUPLICATE_REFERENCE in envelope.message.lower():
                # Reached Paystack on an earlier attempt; report what it has
                return await self._verify(transaction_id)
            raise PermanentError(
                f"Paystack initialize failed: {envelope.message}",
                status_code=response.status_code,
                provider=self.name,
            )

        data = PaystackInitData.model_validate(envelope.data or {})
        return AdapterResult(
            provider_payment_id=data.reference,
            status=TransactionStatus.PENDING,
            redirect_url=data.authorization_url,
            raw=envelope.model_dump(),
        )

    async def _verify(self, reference: str) -> AdapterResult:
        response = await self._request(
            "GET", f"/transaction/verify/{reference}", headers=self._headers
        )
        envelope = self._envelope(response)
        if not envelope.status or response.status_code >= 400:
            raise PermanentError(
                f"Paystack verify failed: {envelope.message}",
                status_code=response.status_code,
                provider=self.name,
            )
        data = PaystackTransaction.model_validate(envelope.data or {})
        status = self.map_provider_status(data.status)
        return AdapterResult(
            provider_payment_id=str(data.id),
            status=status,
            error=data.gateway_response if status is TransactionStatus.FAILED else None,
            raw=envelope.model_dump(),
        )

    async def get_payment_status(self, transaction: Transaction) -> AdapterResult:
        return await self._verify(transaction.id)

    # ─── Refunds ───────────────────────────────────────────────────────

    async def create_refund(self, transaction: Transaction, refund: RefundRecord) -> RefundResult:
        body: dict[str, Any] = {
            "transaction": transaction.id,
            "amount": to_minor_units(refund.amount, refund.currency),
            "currency": refund.currency,
            "merchant_note": refund.reason or f"Refund {refund.id}",
        }
        response = await self._request("POST", "/refund", json=body, headers=self._headers)
        envelope = self._envelope(response)
        if not envelope.status or response.status_code >= 400:
            raise PermanentError(
                f"Paystack refund failed: {envelope.message}",
                status_code=response.status_code,
                provider=self.name,
            )
        data = PaystackRefund.model_validate(envelope.data or {})
        return RefundResult(
            provider_refund_id=str(data.id),
            status=self.map_refund_status(data.status),
            raw=envelope.model_dump(),
        )

    # ─── Webhooks ──────────────────────────────────────────────────────

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_hmac(self._secret_key, raw_body, signature, hashlib.sha512)

    def normalize_webhook_payload(self, raw_body: bytes) -> NormalizedWebhook:
        try:
            event = PaystackWebhook.model_validate(json.loads(raw_body))
        except (PydanticValidationError, ValueError) as e:
            raise PermanentError(f"Malformed Paystack webhook: {e}", provider=self.name) from e

        data = event.data
        # Paystack events carry no event id; the event name plus the object id is unique
        normalized = NormalizedWebhook(
            event_id=f"{event.event}:{data.get('id', data.get('reference', ''))}",
            event_type=event.event,
            raw=data,
        )

        if event.event.startswith("refund."):
            normalized.provider_refund_id = str(data["id"]) if data.get("id") is not None else None
            normalized.transaction_id = data.get("transaction_reference")
            if isinstance(data.get("amount"), int) and data.get("currency"):
                normalized.refund_amount = from_minor_units(data["amount"], str(data["currency"]))
            normalized.refund_status = self.map_refund_status(str(data.get("status", "")))
            return normalized

        if event.event.startswith("charge.") and not event.event.startswith("charge.dispute"):
            normalized.transaction_id = data.get("reference")
            if data.get("id") is not None:
                normalized.provider_payment_id = str(data["id"])
            normalized.status = self.map_provider_status(str(data.get("status", "")))
            if normalized.status is TransactionStatus.FAILED:
                normalized.error = data.get("gateway_response") or "Paystack charge failed"
        return normalized

    def map_provider_status(self, provider_status: str) -> TransactionStatus:
        try:
            return PAYSTACK_STATUS_MAP[provider_status.lower()]
        except KeyError:
            raise ProviderError(
                f"Unmapped Paystack status: {provider_status}", retriable=False, provider=self.name
            ) from None

    def map_refund_status(self, provider_status: str) -> RefundStatus:
        try:
            return PAYSTACK_REFUND_STATUS_MAP[provider_status.lower()]
        except KeyError:
            raise ProviderError(
                f"Unmapped Paystack refund status: {provider_status}", retriable=False, provider=self.name
            ) from None

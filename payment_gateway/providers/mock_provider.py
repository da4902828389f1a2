"""
Deterministic in-process payment provider.

Simulates a processor's observable behavior without a network:
  - Idempotency: a repeated ``create_payment`` with the same transaction id
    returns the original charge instead of creating a new one
  - Configurable outcome, latency, and a queue of errors to raise first
  - HMAC-SHA256 signed webhooks in a simple JSON format

Used by the test-suite and by local runs (``USE_MOCK_PROVIDERS=true``). In
production the PayPal and Paystack adapters take its place.
"""

import asyncio
import hashlib
import json
import uuid
from decimal import Decimal
from typing import Any, Optional

from payment_gateway.errors import PermanentError, ProviderError
from payment_gateway.models.domain import PaymentIntent, RefundRecord, Transaction
from payment_gateway.models.enums import RefundStatus, TransactionStatus
from payment_gateway.providers.base import (
    AdapterResult,
    NormalizedWebhook,
    PaymentProvider,
    RefundResult,
    hmac_hexdigest,
    verify_hmac,
)

MOCK_STATUS_MAP: dict[str, TransactionStatus] = {
    "requires_action": TransactionStatus.PENDING,
    "processing": TransactionStatus.PENDING,
    "succeeded": TransactionStatus.COMPLETED,
    "declined": TransactionStatus.FAILED,
    "canceled": TransactionStatus.CANCELLED,
    "refunded": TransactionStatus.REFUNDED,
}

MOCK_REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "pending": RefundStatus.PENDING,
    "succeeded": RefundStatus.COMPLETED,
    "failed": RefundStatus.FAILED,
}


class MockPaymentProvider(PaymentProvider):
    """
    Unified mock provider.

    Args:
        name: Provider name it answers to (e.g. "paypal" in tests).
        outcome: Provider status returned by ``create_payment``.
        refund_outcome: Provider status returned by ``create_refund``.
        latency_ms: Delay before every call.
        webhook_secret: Key for webhook signatures.
    """

    def __init__(
        self,
        name: str = "mock",
        outcome: str = "succeeded",
        refund_outcome: str = "succeeded",
        latency_ms: int = 0,
        webhook_secret: str = "mock_webhook_secret",
        supported_currencies: Optional[set[str]] = None,
    ):
        self._name = name
        self.outcome = outcome
        self.refund_outcome = refund_outcome
        self.latency_ms = latency_ms
        self.webhook_secret = webhook_secret
        self.supported_currencies = supported_currencies

        # Errors raised (in order) before calls start succeeding
        self.create_errors: list[Exception] = []
        self.status_errors: list[Exception] = []
        self.refund_errors: list[Exception] = []

        self.charges: dict[str, dict[str, Any]] = {}
        self.refunds: dict[str, dict[str, Any]] = {}
        self.create_calls = 0
        self.status_calls = 0
        self.refund_calls = 0

    @property
    def name(self) -> str:
        return self._name

    async def _simulate(self, errors: list[Exception]) -> None:
        if self.latency_ms > 0:
            await asyncio.sleep(self.latency_ms / 1000)
        if errors:
            raise errors.pop(0)

    def _result(self, charge: dict[str, Any]) -> AdapterResult:
        status = self.map_provider_status(charge["status"])
        return AdapterResult(
            provider_payment_id=charge["id"],
            status=status,
            redirect_url=charge["redirect_url"],
            error="Card declined" if status is TransactionStatus.FAILED else None,
            raw=dict(charge),
        )

    async def create_payment(self, transaction_id: str, intent: PaymentIntent) -> AdapterResult:
        self.create_calls += 1
        await self._simulate(self.create_errors)

        if self.supported_currencies and intent.currency.upper() not in self.supported_currencies:
            raise PermanentError(f"{self.name} does not support currency {intent.currency}", provider=self.name)

        charge = self.charges.get(transaction_id)
        if charge is None:
            charge_id = f"ch_{uuid.uuid4().hex[:16]}"
            charge = {
                "id": charge_id,
                "reference": transaction_id,
                "status": self.outcome,
                "amount": str(intent.amount),
                "currency": intent.currency.upper(),
                "redirect_url": f"https://checkout.mock.test/{charge_id}",
            }
            self.charges[transaction_id] = charge
        return self._result(charge)

    async def get_payment_status(self, transaction: Transaction) -> AdapterResult:
        self.status_calls += 1
        await self._simulate(self.status_errors)
        charge = self.charges.get(transaction.id)
        if charge is None:
            raise PermanentError(f"No charge with reference {transaction.id}", status_code=404, provider=self.name)
        return self._result(charge)

    async def create_refund(self, transaction: Transaction, refund: RefundRecord) -> RefundResult:
        self.refund_calls += 1
        await self._simulate(self.refund_errors)
        record = self.refunds.get(refund.id)
        if record is None:
            record = {
                "id": f"re_{uuid.uuid4().hex[:16]}",
                "charge": transaction.provider_payment_id,
                "amount": str(refund.amount),
                "status": self.refund_outcome,
            }
            self.refunds[refund.id] = record
        return RefundResult(
            provider_refund_id=record["id"],
            status=self.map_refund_status(record["status"]),
            error="Refund rejected" if record["status"] == "failed" else None,
            raw=dict(record),
        )

    # ─── Test controls ─────────────────────────────────────────────────

    def set_status(self, transaction_id: str, status: str) -> None:
        """Change what the provider reports for a charge (e.g. after approval)."""
        self.charges[transaction_id]["status"] = status

    def sign(self, body: bytes) -> str:
        return hmac_hexdigest(self.webhook_secret, body, hashlib.sha256)

    def webhook_body(
        self,
        event_id: str,
        transaction_id: str,
        status: Optional[str] = None,
        refund_id: Optional[str] = None,
        refund_status: Optional[str] = None,
        amount: Optional[str] = None,
        refund_reference: Optional[str] = None,
    ) -> bytes:
        payload: dict[str, Any] = {"id": event_id, "transaction_id": transaction_id}
        if amount:
            payload["amount"] = amount
        if refund_reference:
            payload["refund_reference"] = refund_reference
        if status:
            payload["type"] = f"charge.{status}"
            payload["status"] = status
        if refund_status:
            payload["type"] = f"refund.{refund_status}"
            payload["refund_status"] = refund_status
            if refund_id:
                payload["refund_id"] = refund_id
        return json.dumps(payload).encode("utf-8")

    # ─── Webhooks ──────────────────────────────────────────────────────

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_hmac(self.webhook_secret, raw_body, signature, hashlib.sha256)

    def normalize_webhook_payload(self, raw_body: bytes) -> NormalizedWebhook:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise PermanentError(f"Malformed webhook: {e}", provider=self.name) from e

        normalized = NormalizedWebhook(
            event_id=str(payload.get("id", "")),
            event_type=str(payload.get("type", "")),
            transaction_id=payload.get("transaction_id"),
            raw=payload,
        )
        if payload.get("refund_status"):
            normalized.provider_refund_id = payload.get("refund_id")
            normalized.refund_status = self.map_refund_status(payload["refund_status"])
            normalized.refund_reference = payload.get("refund_reference")
            if payload.get("amount"):
                normalized.refund_amount = Decimal(str(payload["amount"]))
        elif payload.get("status"):
            normalized.status = self.map_provider_status(payload["status"])
            if normalized.status is TransactionStatus.FAILED:
                normalized.error = payload.get("error", "Card declined")
        return normalized

    def map_provider_status(self, provider_status: str) -> TransactionStatus:
        try:
            return MOCK_STATUS_MAP[provider_status]
        except KeyError:
            raise ProviderError(
                f"Unmapped {self.name} status: {provider_status}", retriable=False, provider=self.name
            ) from None

    def map_refund_status(self, provider_status: str) -> RefundStatus:
        try:
            return MOCK_REFUND_STATUS_MAP[provider_status]
        except KeyError:
            raise ProviderError(
                f"Unmapped {self.name} refund status: {provider_status}", retriable=False, provider=self.name
            ) from None

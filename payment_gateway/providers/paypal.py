"""
PayPal adapter (REST Orders v2).

  - Auth: OAuth2 client credentials, token cached until shortly before expiry
  - Units: major units as decimal strings ("100.00", "1500" for JPY)
  - Idempotency: ``PayPal-Request-Id`` header = our transaction id; the
    transaction id is also stored as ``reference_id``/``custom_id``
  - Flow: create order (CREATED, buyer redirected to approve link) →
    APPROVED → capture on verify → COMPLETED
  - Webhooks: ``x-paypal-signature`` = HMAC-SHA256 of the raw body with the
    configured webhook secret (set by the relay in front of the endpoint)
"""

import asyncio
import hashlib
import json
import time
from decimal import Decimal, InvalidOperation
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
    verify_hmac,
)
from payment_gateway.routing.provider_catalog import currency_exponent

# Order statuses and capture statuses share one namespace
PAYPAL_STATUS_MAP: dict[str, TransactionStatus] = {
    # Order
    "CREATED": TransactionStatus.PENDING,
    "SAVED": TransactionStatus.PENDING,
    "APPROVED": TransactionStatus.PENDING,
    "PAYER_ACTION_REQUIRED": TransactionStatus.PENDING,
    "VOIDED": TransactionStatus.CANCELLED,
    "COMPLETED": TransactionStatus.COMPLETED,
    # Capture
    "PENDING": TransactionStatus.PENDING,
    "DECLINED": TransactionStatus.FAILED,
    "FAILED": TransactionStatus.FAILED,
    "PARTIALLY_REFUNDED": TransactionStatus.COMPLETED,
    "REFUNDED": TransactionStatus.REFUNDED,
}

PAYPAL_REFUND_STATUS_MAP: dict[str, RefundStatus] = {
    "COMPLETED": RefundStatus.COMPLETED,
    "PENDING": RefundStatus.PENDING,
    "FAILED": RefundStatus.FAILED,
    "CANCELLED": RefundStatus.FAILED,
}

PAYPAL_EVENT_STATUS_MAP: dict[str, TransactionStatus] = {
    "CHECKOUT.ORDER.APPROVED": TransactionStatus.PENDING,
    "CHECKOUT.ORDER.COMPLETED": TransactionStatus.COMPLETED,
    "CHECKOUT.ORDER.VOIDED": TransactionStatus.CANCELLED,
    "CHECKOUT.PAYMENT-APPROVAL.REVERSED": TransactionStatus.CANCELLED,
    "PAYMENT.CAPTURE.COMPLETED": TransactionStatus.COMPLETED,
    "PAYMENT.CAPTURE.PENDING": TransactionStatus.PENDING,
    "PAYMENT.CAPTURE.DENIED": TransactionStatus.FAILED,
    "PAYMENT.CAPTURE.DECLINED": TransactionStatus.FAILED,
    "PAYMENT.CAPTURE.REVERSED": TransactionStatus.REFUNDED,
}

PAYPAL_REFUND_EVENTS = {"PAYMENT.CAPTURE.REFUNDED", "PAYMENT.REFUND.PENDING", "PAYMENT.REFUND.FAILED"}

TOKEN_EXPIRY_MARGIN = 60.0


class PayPalToken(BaseModel):
    access_token: str
    expires_in: int = 32400


class PayPalLink(BaseModel):
    href: str
    rel: str
    method: Optional[str] = None


class PayPalCapture(BaseModel):
    id: str
    status: str


class PayPalPayments(BaseModel):
    captures: list[PayPalCapture] = []


class PayPalPurchaseUnit(BaseModel):
    reference_id: Optional[str] = None
    custom_id: Optional[str] = None
    payments: Optional[PayPalPayments] = None


class PayPalOrder(BaseModel):
    id: str
    status: str
    links: list[PayPalLink] = []
    purchase_units: list[PayPalPurchaseUnit] = []

    @property
    def approve_url(self) -> Optional[str]:
        for link in self.links:
            if link.rel in ("approve", "payer-action"):
                return link.href
        return None

    @property
    def latest_capture(self) -> Optional[PayPalCapture]:
        for unit in self.purchase_units:
            if unit.payments and unit.payments.captures:
                return unit.payments.captures[-1]
        return None


class PayPalRefund(BaseModel):
    id: str
    status: str


class PayPalWebhook(BaseModel):
    id: str
    event_type: str
    resource: dict[str, Any] = {}


def format_major(amount: Decimal, currency: str) -> str:
    exponent = Decimal(1).scaleb(-currency_exponent(currency))
    return str(amount.quantize(exponent))


class PayPalAdapter(HttpPaymentProvider):
    def __init__(
        self,
        config: ProviderConfig,
        client_id: str,
        client_secret: str,
        webhook_secret: str = "",
        base_url: str = "https://api-m.sandbox.paypal.com",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(base_url, timeout=timeout, client=client)
        self._config = config
        self._client_id = client_id
        self._client_secret = client_secret
        self._webhook_secret = webhook_secret
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "paypal"

    # ─── Auth ──────────────────────────────────────────────────────────

    async def _access_token(self) -> str:
        async with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            response = await self._request(
                "POST",
                "/v1/oauth2/token",
                auth=(self._client_id, self._client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
            if response.status_code != 200:
                raise self._permanent(response, "PayPal authentication failed")
            token = PayPalToken.model_validate(response.json())
            self._token = token.access_token
            self._token_expires_at = time.monotonic() + token.expires_in - TOKEN_EXPIRY_MARGIN
            return self._token

    async def _headers(self, request_id: Optional[str] = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {await self._access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def _parse_order(self, response: httpx.Response) -> PayPalOrder:
        try:
            return PayPalOrder.model_validate(response.json())
        except (PydanticValidationError, ValueError) as e:
            raise ProviderError(f"Malformed PayPal order response: {e}", provider=self.name) from e

    def _order_result(self, order: PayPalOrder, raw: dict[str, Any]) -> AdapterResult:
        capture = order.latest_capture
        status = self.map_provider_status(capture.status if capture else order.status)
        return AdapterResult(
            provider_payment_id=order.id,
            status=status,
            redirect_url=order.approve_url,
            raw=raw,
        )

    # ─── Payments ──────────────────────────────────────────────────────

    async def create_payment(self, transaction_id: str, intent: PaymentIntent) -> AdapterResult:
        currency = intent.currency.upper()
        if currency not in self._config.supported_currencies:
            raise PermanentError(f"PayPal does not support currency {currency}", provider=self.name)

        body: dict[str, Any] = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": transaction_id,
                "custom_id": transaction_id,
                "description": intent.description[:127],
                "amount": {
                    "currency_code": currency,
                    "value": format_major(intent.amount, currency),
                },
            }],
        }
        if intent.return_url or intent.cancel_url:
            body["payment_source"] = {"paypal": {"experience_context": {
                k: v for k, v in (
                    ("return_url", intent.return_url),
                    ("cancel_url", intent.cancel_url),
                ) if v
            }}}

        response = await self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers=await self._headers(request_id=transaction_id),
        )
        if response.status_code not in (200, 201):
            raise self._permanent(response, "PayPal order creation failed")
        return self._order_result(self._parse_order(response), response.json())

    async def _capture(self, transaction: Transaction) -> AdapterResult:
        response = await self._request(
            "POST",
            f"/v2/checkout/orders/{transaction.provider_payment_id}/capture",
            headers=await self._headers(request_id=f"{transaction.id}-capture"),
        )
        if response.status_code == 422:
            # Instrument declined or order already captured
            detail = response.json() if response.content else {}
            issues = [d.get("issue") for d in detail.get("details", [])]
            if "ORDER_ALREADY_CAPTURED" in issues:
                return await self._get_order(transaction.provider_payment_id)
            return AdapterResult(
                provider_payment_id=transaction.provider_payment_id,
                status=TransactionStatus.FAILED,
                error=f"PayPal capture declined: {', '.join(filter(None, issues)) or response.text[:200]}",
                raw=detail,
            )
        if response.status_code not in (200, 201):
            raise self._permanent(response, "PayPal capture failed")
        return self._order_result(self._parse_order(response), response.json())

    async def _get_order(self, order_id: str) -> AdapterResult:
        response = await self._request(
            "GET", f"/v2/checkout/orders/{order_id}", headers=await self._headers()
        )
        if response.status_code != 200:
            raise self._permanent(response, "PayPal order lookup failed")
        return self._order_result(self._parse_order(response), response.json())

    async def get_payment_status(self, transaction: Transaction) -> AdapterResult:
        if not transaction.provider_payment_id:
            # Orders are only looked up by id. Without one the buyer never got
            # an approval link, so nothing can have been captured.
            raise PermanentError(
                f"No PayPal order recorded for {transaction.id}",
                status_code=404,
                provider=self.name,
            )

        result = await self._get_order(transaction.provider_payment_id)
        if result.raw.get("status") == "APPROVED":
            return await self._capture(transaction)
        return result

    # ─── Refunds ───────────────────────────────────────────────────────

    async def create_refund(self, transaction: Transaction, refund: RefundRecord) -> RefundResult:
        order = await self._get_order(transaction.provider_payment_id or "")
        capture = PayPalOrder.model_validate(order.raw).latest_capture
        if capture is None:
            raise PermanentError(
                f"PayPal order {transaction.provider_payment_id} has no capture to refund",
                provider=self.name,
            )

        body: dict[str, Any] = {
            "amount": {
                "currency_code": refund.currency,
                "value": format_major(refund.amount, refund.currency),
            },
        }
        body["custom_id"] = transaction.id
        body["invoice_id"] = refund.id
        if refund.reason:
            body["note_to_payer"] = refund.reason[:255]

        response = await self._request(
            "POST",
            f"/v2/payments/captures/{capture.id}/refund",
            json=body,
            headers=await self._headers(request_id=refund.id),
        )
        if response.status_code not in (200, 201):
            raise self._permanent(response, "PayPal refund failed")
        data = PayPalRefund.model_validate(response.json())
        return RefundResult(
            provider_refund_id=data.id,
            status=self.map_refund_status(data.status),
            raw=response.json(),
        )

    # ─── Webhooks ──────────────────────────────────────────────────────

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        return verify_hmac(self._webhook_secret, raw_body, signature, hashlib.sha256)

    def normalize_webhook_payload(self, raw_body: bytes) -> NormalizedWebhook:
        try:
            event = PayPalWebhook.model_validate(json.loads(raw_body))
        except (PydanticValidationError, ValueError) as e:
            raise PermanentError(f"Malformed PayPal webhook: {e}", provider=self.name) from e

        resource = event.resource
        normalized = NormalizedWebhook(
            event_id=event.id,
            event_type=event.event_type,
            raw=resource,
        )

        if event.event_type in PAYPAL_REFUND_EVENTS:
            normalized.provider_refund_id = resource.get("id")
            normalized.refund_status = self.map_refund_status(str(resource.get("status", "")))
            normalized.transaction_id = resource.get("custom_id")
            normalized.refund_reference = resource.get("invoice_id")
            value = (resource.get("amount") or {}).get("value")
            try:
                normalized.refund_amount = Decimal(str(value)) if value is not None else None
            except InvalidOperation:
                normalized.refund_amount = None
            return normalized

        units = resource.get("purchase_units") or [{}]
        normalized.transaction_id = (
            resource.get("custom_id") or units[0].get("custom_id") or units[0].get("reference_id")
        )
        if event.event_type.startswith("CHECKOUT.ORDER"):
            normalized.provider_payment_id = resource.get("id")
        else:
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            normalized.provider_payment_id = related.get("order_id")

        normalized.status = PAYPAL_EVENT_STATUS_MAP.get(event.event_type)
        if normalized.status is TransactionStatus.FAILED:
            reason = (resource.get("status_details") or {}).get("reason")
            normalized.error = f"PayPal {event.event_type}" + (f": {reason}" if reason else "")
        return normalized

    def map_provider_status(self, provider_status: str) -> TransactionStatus:
        try:
            return PAYPAL_STATUS_MAP[provider_status.upper()]
        except KeyError:
            raise ProviderError(
                f"Unmapped PayPal status: {provider_status}", retriable=False, provider=self.name
            ) from None

    def map_refund_status(self, provider_status: str) -> RefundStatus:
        try:
            return PAYPAL_REFUND_STATUS_MAP[provider_status.upper()]
        except KeyError:
            raise ProviderError(
                f"Unmapped PayPal refund status: {provider_status}", retriable=False, provider=self.name
            ) from None

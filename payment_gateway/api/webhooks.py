"""
Provider webhook endpoint.

POST /webhooks/{provider} — Verify, dedupe and apply a provider event.

The raw body is passed through untouched; signatures are computed over the
exact bytes the provider sent.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from payment_gateway.api.deps import get_gateway
from payment_gateway.engine.gateway import PaymentGateway

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

# Header carrying the signature, per provider
SIGNATURE_HEADERS = {
    "paypal": "x-paypal-signature",
    "paystack": "x-paystack-signature",
}
DEFAULT_SIGNATURE_HEADER = "x-webhook-signature"


class WebhookAck(BaseModel):
    provider: str
    event_id: str
    event_type: str
    state: str
    outcome: Optional[str] = None
    transaction_id: Optional[str] = None


@router.post("/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Duplicates are acknowledged with 200 so the provider stops redelivering."""
    raw_body = await request.body()
    header = SIGNATURE_HEADERS.get(provider, DEFAULT_SIGNATURE_HEADER)
    signature = request.headers.get(header, "")

    event = await gateway.handle_webhook(provider, raw_body, signature)
    return WebhookAck(
        provider=event.provider,
        event_id=event.provider_event_id,
        event_type=event.event_type,
        state=event.state.value,
        outcome=event.outcome,
        transaction_id=event.transaction_id,
    )

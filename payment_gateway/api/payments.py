"""
Payment, refund and provider endpoints.

POST /payments                — Charge a customer.
GET  /payments/{id}           — Get a single transaction.
POST /payments/{id}/verify    — Reconcile with the provider.
GET  /payments/{id}/trace     — Full status history for a transaction.
GET  /payments/{id}/refunds   — Refunds against a transaction.
GET  /transactions            — Recent transactions, optionally per customer.
POST /refunds                 — Refund all or part of a payment.
GET  /providers               — Configured providers and their coverage.
"""

from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from payment_gateway.api.deps import get_gateway
from payment_gateway.engine.gateway import PaymentGateway
from payment_gateway.models.domain import (
    PaymentIntent,
    ProviderConfig,
    RefundIntent,
    RefundRecord,
    StatusChange,
    Transaction,
)

router = APIRouter(tags=["payments"])


class PaymentRequest(BaseModel):
    amount: Decimal
    currency: str
    description: str
    customer_email: str
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    customer_country: Optional[str] = None
    preferred_provider: Optional[str] = None
    metadata: dict[str, Any] = {}
    transaction_id: Optional[str] = None


class RefundRequest(BaseModel):
    transaction_id: str
    amount: Optional[Decimal] = None
    reason: str = ""
    refund_id: Optional[str] = None


class FeeDetail(BaseModel):
    amount: Decimal
    currency: str


class TransactionDetail(BaseModel):
    id: str
    provider: str
    provider_payment_id: Optional[str]
    status: str
    amount: Decimal
    currency: str
    fee: FeeDetail
    net_amount: Decimal
    refunded_amount: Decimal
    remaining_refundable: Decimal
    customer_email: str
    description: str
    redirect_url: Optional[str]
    metadata: dict[str, Any]
    error: Optional[str]
    error_code: Optional[str]
    created_at: str
    updated_at: str


class StatusChangeEntry(BaseModel):
    from_status: Optional[str]
    to_status: str
    source: str
    error: Optional[str] = None
    raw: Optional[dict] = None
    at: str


class TransactionTrace(BaseModel):
    transaction: TransactionDetail
    status_trail: list[StatusChangeEntry]


class RefundDetail(BaseModel):
    id: str
    transaction_id: str
    provider: str
    provider_refund_id: Optional[str]
    amount: Decimal
    currency: str
    status: str
    reason: str
    error: Optional[str]
    created_at: str
    updated_at: str


class ProviderDetail(BaseModel):
    name: str
    display_name: str
    supported_currencies: list[str]
    supported_countries: list[str]


class ProviderListing(BaseModel):
    providers: list[ProviderDetail]
    currencies: list[str]
    countries: list[str]


def _tx_to_detail(tx: Transaction) -> TransactionDetail:
    return TransactionDetail(
        id=tx.id,
        provider=tx.provider,
        provider_payment_id=tx.provider_payment_id,
        status=tx.status.value,
        amount=tx.amount,
        currency=tx.currency,
        fee=FeeDetail(amount=tx.fee.amount, currency=tx.fee.currency),
        net_amount=tx.net_amount,
        refunded_amount=tx.refunded_amount,
        remaining_refundable=tx.remaining_refundable,
        customer_email=tx.customer_email,
        description=tx.description,
        redirect_url=tx.redirect_url,
        metadata=tx.metadata,
        error=tx.error,
        error_code=tx.error_code,
        created_at=tx.created_at.isoformat(),
        updated_at=tx.updated_at.isoformat(),
    )


def _change_to_entry(change: StatusChange) -> StatusChangeEntry:
    return StatusChangeEntry(
        from_status=change.from_status.value if change.from_status else None,
        to_status=change.to_status.value,
        source=change.source.value,
        error=change.error,
        raw=change.raw,
        at=change.at.isoformat(),
    )


def _refund_to_detail(refund: RefundRecord) -> RefundDetail:
    return RefundDetail(
        id=refund.id,
        transaction_id=refund.transaction_id,
        provider=refund.provider,
        provider_refund_id=refund.provider_refund_id,
        amount=refund.amount,
        currency=refund.currency,
        status=refund.status.value,
        reason=refund.reason,
        error=refund.error,
        created_at=refund.created_at.isoformat(),
        updated_at=refund.updated_at.isoformat(),
    )


def _provider_to_detail(config: ProviderConfig) -> ProviderDetail:
    return ProviderDetail(
        name=config.name,
        display_name=config.display_name,
        supported_currencies=sorted(config.supported_currencies),
        supported_countries=sorted(config.supported_countries),
    )


@router.post("/payments", response_model=TransactionDetail, status_code=201)
async def create_payment(
    request: PaymentRequest,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """
    Charge a customer.

    Declines come back as a ``failed`` transaction with ``error`` set, not
    as an HTTP error. Resubmitting with the same ``transaction_id`` returns
    the recorded transaction without charging again.
    """
    intent = PaymentIntent(
        amount=request.amount,
        currency=request.currency,
        description=request.description,
        customer_email=request.customer_email,
        return_url=request.return_url,
        cancel_url=request.cancel_url,
        customer_country=request.customer_country,
        preferred_provider=request.preferred_provider,
        metadata=request.metadata,
    )
    tx = await gateway.process_payment(intent, transaction_id=request.transaction_id)
    return _tx_to_detail(tx)


@router.get("/payments/{transaction_id}", response_model=TransactionDetail)
async def get_payment(transaction_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    return _tx_to_detail(await gateway.get_transaction(transaction_id))


@router.post("/payments/{transaction_id}/verify", response_model=TransactionDetail)
async def verify_payment(transaction_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    """Ask the provider for the authoritative status and reconcile."""
    return _tx_to_detail(await gateway.verify_payment(transaction_id))


@router.get("/payments/{transaction_id}/trace", response_model=TransactionTrace)
async def get_payment_trace(transaction_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    """
    Full status history for a transaction.

    Returns the transaction plus every status change, oldest first, with
    the source that triggered it (adapter, verify, webhook, refund, timeout).
    """
    tx = await gateway.get_transaction(transaction_id)
    trail = await gateway.get_transaction_trail(transaction_id)
    return TransactionTrace(
        transaction=_tx_to_detail(tx),
        status_trail=[_change_to_entry(c) for c in trail],
    )


@router.get("/payments/{transaction_id}/refunds", response_model=list[RefundDetail])
async def list_payment_refunds(transaction_id: str, gateway: PaymentGateway = Depends(get_gateway)):
    return [_refund_to_detail(r) for r in await gateway.get_refunds(transaction_id)]


@router.get("/transactions", response_model=list[TransactionDetail])
async def list_transactions(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of transactions"),
    email: Optional[str] = Query(None, description="Only this customer's transactions"),
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Most recent transactions first."""
    if email:
        txs = await gateway.get_customer_transactions(email, limit)
    else:
        txs = await gateway.get_transaction_history(limit)
    return [_tx_to_detail(tx) for tx in txs]


@router.post("/refunds", response_model=RefundDetail, status_code=201)
async def create_refund(
    request: RefundRequest,
    gateway: PaymentGateway = Depends(get_gateway),
):
    """Refund ``amount``, or the whole remaining balance when omitted."""
    refund = await gateway.process_refund(RefundIntent(
        transaction_id=request.transaction_id,
        amount=request.amount,
        reason=request.reason,
        refund_id=request.refund_id,
    ))
    return _refund_to_detail(refund)


@router.get("/providers", response_model=ProviderListing)
async def list_providers(gateway: PaymentGateway = Depends(get_gateway)):
    return ProviderListing(
        providers=[_provider_to_detail(p) for p in gateway.get_providers()],
        currencies=gateway.get_supported_currencies(),
        countries=gateway.get_supported_countries(),
    )

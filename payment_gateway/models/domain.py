"""
Provider-agnostic domain objects.

Amounts are always ``Decimal`` in major units (e.g. dollars, naira).
Conversion to minor units happens inside the adapters only.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from payment_gateway.models.enums import (
    ChangeSource,
    RefundStatus,
    TransactionStatus,
    WebhookState,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_transaction_id() -> str:
    return f"txn_{uuid.uuid4().hex}"


def new_refund_id() -> str:
    return f"rfd_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class PaymentIntent:
    """What the caller wants charged. Immutable once submitted."""

    amount: Decimal
    currency: str
    description: str
    customer_email: str
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    customer_country: Optional[str] = None
    preferred_provider: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RefundIntent:
    """Refund request. ``amount=None`` refunds the remaining balance."""

    transaction_id: str
    amount: Optional[Decimal] = None
    reason: str = ""
    refund_id: Optional[str] = None


@dataclass(frozen=True)
class Fee:
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class FeeSchedule:
    """Processor cut: ``percentage`` of the amount plus a ``fixed`` fee in ``currency``."""

    percentage: Decimal
    fixed: Decimal
    currency: str
    minimum: Optional[Decimal] = None
    maximum: Optional[Decimal] = None


@dataclass(frozen=True)
class ProviderConfig:
    """Static description of a payment provider, loaded once at startup."""

    name: str
    display_name: str
    active: bool
    supported_currencies: frozenset[str]
    supported_countries: frozenset[str]
    fee_schedule: FeeSchedule
    fee_schedules: dict[str, FeeSchedule] = field(default_factory=dict)

    def schedule_for(self, currency: str) -> FeeSchedule:
        return self.fee_schedules.get(currency.upper(), self.fee_schedule)


@dataclass
class Transaction:
    """
    A single logical payment attempt.

    Owned by the ledger. Everything outside the ledger works on copies.
    """

    id: str
    provider: str
    amount: Decimal
    currency: str
    fee: Fee
    customer_email: str
    description: str = ""
    status: TransactionStatus = TransactionStatus.PENDING
    provider_payment_id: Optional[str] = None
    redirect_url: Optional[str] = None
    return_url: Optional[str] = None
    cancel_url: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    error_code: Optional[str] = None
    refunded_amount: Decimal = Decimal("0")
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def remaining_refundable(self) -> Decimal:
        return self.amount - self.refunded_amount

    @property
    def net_amount(self) -> Decimal:
        return self.amount - self.fee.amount

    def to_intent(self) -> PaymentIntent:
        """Rebuild the original intent, used to replay an idempotent create."""
        return PaymentIntent(
            amount=self.amount,
            currency=self.currency,
            description=self.description,
            customer_email=self.customer_email,
            return_url=self.return_url,
            cancel_url=self.cancel_url,
            metadata=dict(self.metadata),
        )


@dataclass(frozen=True)
class StatusChange:
    """One append-only entry in a transaction's audit history."""

    transaction_id: str
    from_status: Optional[TransactionStatus]
    to_status: TransactionStatus
    source: ChangeSource
    error: Optional[str] = None
    raw: Optional[dict[str, Any]] = None
    at: datetime = field(default_factory=utcnow)


@dataclass
class RefundRecord:
    id: str
    transaction_id: str
    provider: str
    amount: Decimal
    currency: str
    status: RefundStatus = RefundStatus.PENDING
    provider_refund_id: Optional[str] = None
    reason: str = ""
    error: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class WebhookEvent:
    """An inbound webhook delivery and its processing outcome."""

    provider: str
    payload: str
    signature: str
    event_type: str = ""
    provider_event_id: str = ""
    received_at: datetime = field(default_factory=utcnow)
    verified: bool = False
    processed: bool = False
    state: WebhookState = WebhookState.RECEIVED
    transaction_id: Optional[str] = None
    outcome: Optional[str] = None

    @property
    def dedupe_key(self) -> tuple[str, str]:
        return (self.provider, self.provider_event_id)

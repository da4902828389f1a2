"""Enumerations for the payment gateway domain model."""

from enum import Enum


class TransactionStatus(str, Enum):
    """Lifecycle states for a transaction."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class RefundStatus(str, Enum):
    """Lifecycle states for a refund."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WebhookState(str, Enum):
    """Processing states of an inbound webhook delivery."""

    RECEIVED = "received"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    REJECTED = "rejected"
    DEDUPED = "deduped"
    APPLYING = "applying"
    APPLIED = "applied"


class ChangeSource(str, Enum):
    """What triggered a transaction status change."""

    CREATE = "create"
    ADAPTER = "adapter"
    VERIFY = "verify"
    WEBHOOK = "webhook"
    REFUND = "refund"
    TIMEOUT = "timeout"

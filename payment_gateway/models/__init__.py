from payment_gateway.models.domain import (
    Fee,
    FeeSchedule,
    PaymentIntent,
    ProviderConfig,
    RefundIntent,
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
)
from payment_gateway.models.enums import ChangeSource, RefundStatus, TransactionStatus, WebhookState
from payment_gateway.models.ledger import (
    AuditLog,
    Base,
    RefundRow,
    TransactionChangeRow,
    TransactionRow,
    WebhookEventRow,
)

__all__ = [
    "AuditLog",
    "Base",
    "ChangeSource",
    "Fee",
    "FeeSchedule",
    "PaymentIntent",
    "ProviderConfig",
    "RefundIntent",
    "RefundRecord",
    "RefundRow",
    "RefundStatus",
    "StatusChange",
    "Transaction",
    "TransactionChangeRow",
    "TransactionRow",
    "TransactionStatus",
    "WebhookEvent",
    "WebhookEventRow",
    "WebhookState",
]

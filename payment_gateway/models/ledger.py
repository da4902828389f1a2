"""SQLAlchemy models for the durable ledger."""

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, relationship


class Base(DeclarativeBase):
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransactionRow(Base):
    """
    Current snapshot of a transaction.

    The id is generated by the gateway and doubles as the provider's
    idempotency / reference key, so it is unique across the table forever.
    """

    __tablename__ = "transactions"

    id = Column(String(64), primary_key=True)
    provider = Column(String(30), nullable=False, index=True)
    provider_payment_id = Column(String(100), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending")
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    fee_amount = Column(Numeric(18, 4), nullable=False)
    fee_currency = Column(String(3), nullable=False)
    refunded_amount = Column(Numeric(18, 4), nullable=False, default=0)
    customer_email = Column(String(254), nullable=False, index=True)
    description = Column(Text, nullable=True)
    redirect_url = Column(Text, nullable=True)
    return_url = Column(Text, nullable=True)
    cancel_url = Column(Text, nullable=True)
    extra = Column("metadata", JSON, nullable=True)  # `metadata` is reserved on declarative classes
    error = Column(Text, nullable=True)
    error_code = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    changes = relationship("TransactionChangeRow", back_populates="transaction", lazy="raise")


class TransactionChangeRow(Base):
    """
    Append-only status history entry.

    Rows are never updated or deleted; the transaction's current status is
    always the ``to_status`` of its latest change.
    """

    __tablename__ = "transaction_changes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), ForeignKey("transactions.id"), nullable=False, index=True)
    from_status = Column(String(20), nullable=True)
    to_status = Column(String(20), nullable=False)
    source = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)
    raw = Column(JSON, nullable=True)
    at = Column(DateTime(timezone=True), default=_utcnow)

    transaction = relationship("TransactionRow", back_populates="changes")


class RefundRow(Base):
    __tablename__ = "refunds"

    id = Column(String(64), primary_key=True)
    transaction_id = Column(String(64), ForeignKey("transactions.id"), nullable=False, index=True)
    provider = Column(String(30), nullable=False)
    provider_refund_id = Column(String(100), nullable=True, index=True)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    reason = Column(Text, nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)


class WebhookEventRow(Base):
    """
    Inbound webhook delivery.

    The (provider, provider_event_id) pair is the dedupe key: a redelivered
    event hits the unique constraint and is never applied twice.
    """

    __tablename__ = "webhook_events"
    __table_args__ = (
        UniqueConstraint("provider", "provider_event_id", name="uq_webhook_provider_event"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(30), nullable=False)
    provider_event_id = Column(String(200), nullable=False)
    event_type = Column(String(100), nullable=True)
    payload = Column(Text, nullable=False)
    signature = Column(Text, nullable=True)
    verified = Column(Boolean, default=False)
    processed = Column(Boolean, default=False)
    state = Column(String(20), nullable=False, default="received")
    transaction_id = Column(String(64), nullable=True, index=True)
    outcome = Column(String(50), nullable=True)
    received_at = Column(DateTime(timezone=True), default=_utcnow)


class AuditLog(Base):
    """
    Immutable audit trail entry.

    Every state change and every rejected or suspicious operation gets an
    entry. These are append-only and never modified.
    """

    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(64), nullable=True, index=True)
    action = Column(String(50), nullable=False)
    details = Column(Text, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow)

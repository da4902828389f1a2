"""
SQLAlchemy-backed ledger store.

One short-lived session per operation, committed immediately. A status
change and its history row share that session, so they commit together. Unique
constraints back the in-process checks: a duplicate transaction id or a
redelivered webhook fails at the database even if two processes race.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_gateway.errors import DuplicateTransactionError
from payment_gateway.ledger.base import LedgerStore
from payment_gateway.models.domain import (
    Fee,
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
)
from payment_gateway.models.enums import (
    ChangeSource,
    RefundStatus,
    TransactionStatus,
    WebhookState,
)
from payment_gateway.models.ledger import (
    RefundRow,
    TransactionChangeRow,
    TransactionRow,
    WebhookEventRow,
)
from payment_gateway.routing.provider_catalog import currency_exponent


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything we store is UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _decimal(value, currency: str) -> Decimal:
    """Numeric columns come back at the column scale (or as float on SQLite)."""
    amount = value if isinstance(value, Decimal) else Decimal(str(value))
    return amount.quantize(Decimal(1).scaleb(-currency_exponent(currency)))


def _tx_from_row(row: TransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        provider=row.provider,
        provider_payment_id=row.provider_payment_id,
        status=TransactionStatus(row.status),
        amount=_decimal(row.amount, row.currency),
        currency=row.currency,
        fee=Fee(amount=_decimal(row.fee_amount, row.fee_currency), currency=row.fee_currency),
        refunded_amount=_decimal(row.refunded_amount or 0, row.currency),
        customer_email=row.customer_email,
        description=row.description or "",
        redirect_url=row.redirect_url,
        return_url=row.return_url,
        cancel_url=row.cancel_url,
        metadata=dict(row.extra or {}),
        error=row.error,
        error_code=row.error_code,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _change_row(change: StatusChange) -> TransactionChangeRow:
    return TransactionChangeRow(
        transaction_id=change.transaction_id,
        from_status=change.from_status.value if change.from_status else None,
        to_status=change.to_status.value,
        source=change.source.value,
        error=change.error,
        raw=change.raw,
        at=change.at,
    )


def _copy_tx_to_row(tx: Transaction, row: TransactionRow) -> None:
    row.provider = tx.provider
    row.provider_payment_id = tx.provider_payment_id
    row.status = tx.status.value
    row.amount = tx.amount
    row.currency = tx.currency
    row.fee_amount = tx.fee.amount
    row.fee_currency = tx.fee.currency
    row.refunded_amount = tx.refunded_amount
    row.customer_email = tx.customer_email
    row.description = tx.description
    row.redirect_url = tx.redirect_url
    row.return_url = tx.return_url
    row.cancel_url = tx.cancel_url
    row.extra = dict(tx.metadata)
    row.error = tx.error
    row.error_code = tx.error_code
    row.created_at = tx.created_at
    row.updated_at = tx.updated_at


def _refund_from_row(row: RefundRow) -> RefundRecord:
    return RefundRecord(
        id=row.id,
        transaction_id=row.transaction_id,
        provider=row.provider,
        provider_refund_id=row.provider_refund_id,
        amount=_decimal(row.amount, row.currency),
        currency=row.currency,
        status=RefundStatus(row.status),
        reason=row.reason or "",
        error=row.error,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


def _copy_refund_to_row(refund: RefundRecord, row: RefundRow) -> None:
    row.transaction_id = refund.transaction_id
    row.provider = refund.provider
    row.provider_refund_id = refund.provider_refund_id
    row.amount = refund.amount
    row.currency = refund.currency
    row.status = refund.status.value
    row.reason = refund.reason
    row.error = refund.error
    row.created_at = refund.created_at
    row.updated_at = refund.updated_at


def _webhook_from_row(row: WebhookEventRow) -> WebhookEvent:
    return WebhookEvent(
        provider=row.provider,
        provider_event_id=row.provider_event_id,
        event_type=row.event_type or "",
        payload=row.payload,
        signature=row.signature or "",
        verified=bool(row.verified),
        processed=bool(row.processed),
        state=WebhookState(row.state),
        transaction_id=row.transaction_id,
        outcome=row.outcome,
        received_at=_aware(row.received_at),
    )


def _copy_webhook_to_row(event: WebhookEvent, row: WebhookEventRow) -> None:
    row.provider = event.provider
    row.provider_event_id = event.provider_event_id
    row.event_type = event.event_type
    row.payload = event.payload
    row.signature = event.signature
    row.verified = event.verified
    row.processed = event.processed
    row.state = event.state.value
    row.transaction_id = event.transaction_id
    row.outcome = event.outcome
    row.received_at = event.received_at


class SqlLedgerStore(LedgerStore):
    """Ledger store on an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert_transaction(self, tx: Transaction, change: StatusChange) -> None:
        async with self._session_factory() as session:
            if await session.get(TransactionRow, tx.id) is not None:
                raise DuplicateTransactionError(f"Transaction already exists: {tx.id}")
            row = TransactionRow(id=tx.id)
            _copy_tx_to_row(tx, row)
            session.add(row)
            session.add(_change_row(change))
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateTransactionError(f"Transaction already exists: {tx.id}") from e

    async def _stage_transaction(
        self, session: AsyncSession, tx: Transaction, change: Optional[StatusChange]
    ) -> None:
        row = await session.get(TransactionRow, tx.id)
        if row is None:
            row = TransactionRow(id=tx.id)
            session.add(row)
        _copy_tx_to_row(tx, row)
        if change is not None:
            session.add(_change_row(change))

    async def save_transaction(self, tx: Transaction, change: Optional[StatusChange] = None) -> None:
        async with self._session_factory() as session:
            await self._stage_transaction(session, tx, change)
            await session.commit()

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        async with self._session_factory() as session:
            row = await session.get(TransactionRow, transaction_id)
            return _tx_from_row(row) if row else None

    async def list_transactions(
        self, limit: int, customer_email: Optional[str] = None
    ) -> list[Transaction]:
        stmt = select(TransactionRow)
        if customer_email:
            stmt = stmt.where(func.lower(TransactionRow.customer_email) == customer_email.lower())
        stmt = stmt.order_by(TransactionRow.created_at.desc()).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [_tx_from_row(r) for r in result.scalars().all()]

    async def list_changes(self, transaction_id: str) -> list[StatusChange]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(TransactionChangeRow)
                .where(TransactionChangeRow.transaction_id == transaction_id)
                .order_by(TransactionChangeRow.id.asc())
            )
            return [
                StatusChange(
                    transaction_id=r.transaction_id,
                    from_status=TransactionStatus(r.from_status) if r.from_status else None,
                    to_status=TransactionStatus(r.to_status),
                    source=ChangeSource(r.source),
                    error=r.error,
                    raw=r.raw,
                    at=_aware(r.at),
                )
                for r in result.scalars().all()
            ]

    async def insert_refund(self, refund: RefundRecord) -> None:
        async with self._session_factory() as session:
            if await session.get(RefundRow, refund.id) is not None:
                raise DuplicateTransactionError(f"Refund already exists: {refund.id}")
            row = RefundRow(id=refund.id)
            _copy_refund_to_row(refund, row)
            session.add(row)
            await session.commit()

    async def save_refund(
        self,
        refund: RefundRecord,
        tx: Optional[Transaction] = None,
        change: Optional[StatusChange] = None,
    ) -> None:
        async with self._session_factory() as session:
            row = await session.get(RefundRow, refund.id)
            if row is None:
                row = RefundRow(id=refund.id)
                session.add(row)
            _copy_refund_to_row(refund, row)
            if tx is not None:
                await self._stage_transaction(session, tx, change)
            await session.commit()

    async def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        async with self._session_factory() as session:
            row = await session.get(RefundRow, refund_id)
            return _refund_from_row(row) if row else None

    async def find_refund_by_provider_id(
        self, provider: str, provider_refund_id: str
    ) -> Optional[RefundRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RefundRow).where(
                    RefundRow.provider == provider,
                    RefundRow.provider_refund_id == provider_refund_id,
                )
            )
            row = result.scalars().first()
            return _refund_from_row(row) if row else None

    async def list_refunds(self, transaction_id: str) -> list[RefundRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RefundRow)
                .where(RefundRow.transaction_id == transaction_id)
                .order_by(RefundRow.created_at.asc())
            )
            return [_refund_from_row(r) for r in result.scalars().all()]

    async def insert_webhook(self, event: WebhookEvent) -> bool:
        async with self._session_factory() as session:
            row = WebhookEventRow()
            _copy_webhook_to_row(event, row)
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def save_webhook(self, event: WebhookEvent) -> None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEventRow).where(
                    WebhookEventRow.provider == event.provider,
                    WebhookEventRow.provider_event_id == event.provider_event_id,
                )
            )
            row = result.scalars().first()
            if row is None:
                row = WebhookEventRow()
                session.add(row)
            _copy_webhook_to_row(event, row)
            await session.commit()

    async def get_webhook(self, provider: str, provider_event_id: str) -> Optional[WebhookEvent]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(WebhookEventRow).where(
                    WebhookEventRow.provider == provider,
                    WebhookEventRow.provider_event_id == provider_event_id,
                )
            )
            row = result.scalars().first()
            return _webhook_from_row(row) if row else None

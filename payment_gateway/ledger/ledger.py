"""
Transaction ledger, the authoritative record of payment state.

All status changes, whatever triggered them (adapter response, polling,
webhook, refund), go through ``update_status``. That single path enforces:

  - No regression: once terminal, a transaction only moves
    ``completed -> refunded``, or out of an ambiguous (timed-out) failure
    into the status the provider reports.
  - Append-only history: every applied change is stored as a StatusChange
    and copied to the audit sink.
  - Refund bound: completed refunds never exceed the original amount.

Callers serialize per transaction with ``async with ledger.lock(id)``.
The ledger itself never takes that lock, so it can be called while held.
"""

import json
import logging
from collections.abc import Awaitable
from dataclasses import replace
from decimal import Decimal
from typing import Any, Callable, Optional

from payment_gateway.audit.logger import AuditSink, LoggingAuditSink
from payment_gateway.errors import (
    AmbiguousOutcomeError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from payment_gateway.ledger.base import LedgerStore
from payment_gateway.ledger.locks import KeyedLock
from payment_gateway.models.domain import (
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
    utcnow,
)
from payment_gateway.models.enums import ChangeSource, RefundStatus, TransactionStatus

logger = logging.getLogger("payment_gateway.ledger")

Listener = Callable[[Transaction, StatusChange], Awaitable[None]]

# Provider statuses an ambiguous failure may be reconciled to
_RECOVERABLE_FROM_AMBIGUOUS = {
    TransactionStatus.COMPLETED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
}


def _json_safe(raw: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if raw is None:
        return None
    return json.loads(json.dumps(raw, default=str))


def can_transition(tx: Transaction, new_status: TransactionStatus) -> bool:
    current = tx.status
    if current is TransactionStatus.PENDING:
        return True
    if current is TransactionStatus.COMPLETED and new_status is TransactionStatus.REFUNDED:
        return True
    if (
        current is TransactionStatus.FAILED
        and tx.error_code == AmbiguousOutcomeError.code
        and new_status in _RECOVERABLE_FROM_AMBIGUOUS
    ):
        return True
    return False


def _fill_details(
    tx: Transaction, provider_payment_id: Optional[str], redirect_url: Optional[str]
) -> bool:
    """Copy provider identifiers onto ``tx``. True if anything changed."""
    changed = False
    if provider_payment_id and tx.provider_payment_id != provider_payment_id:
        tx.provider_payment_id = provider_payment_id
        changed = True
    if redirect_url and tx.redirect_url != redirect_url:
        tx.redirect_url = redirect_url
        changed = True
    if changed:
        tx.updated_at = utcnow()
    return changed


def _apply_transition(
    tx: Transaction,
    new_status: TransactionStatus,
    source: ChangeSource,
    raw: Optional[dict[str, Any]],
    error: Optional[str],
    error_code: Optional[str],
) -> StatusChange:
    """Move ``tx`` to ``new_status`` in place and return the history entry."""
    previous = tx.status
    tx.status = new_status
    tx.updated_at = utcnow()
    if new_status in (TransactionStatus.FAILED, TransactionStatus.CANCELLED):
        tx.error = error or tx.error
        tx.error_code = error_code or tx.error_code
    elif previous is TransactionStatus.FAILED:
        # Recovered from an ambiguous outcome
        tx.error = None
        tx.error_code = None
    return StatusChange(
        transaction_id=tx.id,
        from_status=previous,
        to_status=new_status,
        source=source,
        error=error,
        raw=_json_safe(raw),
        at=tx.updated_at,
    )


class TransactionLedger:
    def __init__(self, store: LedgerStore, audit: Optional[AuditSink] = None):
        self._store = store
        self._audit = audit or LoggingAuditSink()
        self._locks = KeyedLock()
        self._listeners: list[Listener] = []

    @property
    def audit(self) -> AuditSink:
        return self._audit

    def lock(self, transaction_id: str):
        """Per-transaction mutual exclusion (async context manager)."""
        return self._locks.hold(transaction_id)

    def subscribe(self, listener: Listener) -> None:
        """Register a coroutine called after every applied status change."""
        self._listeners.append(listener)

    # ─── Transactions ──────────────────────────────────────────────────

    async def create(self, tx: Transaction) -> Transaction:
        """
        Record a new transaction.

        Raises:
            DuplicateTransactionError: If the id already exists.
        """
        change = StatusChange(
            transaction_id=tx.id,
            from_status=None,
            to_status=tx.status,
            source=ChangeSource.CREATE,
            at=tx.created_at,
        )
        await self._store.insert_transaction(tx, change)
        await self._audit.record("transaction_created", tx.id, {
            "provider": tx.provider,
            "amount": str(tx.amount),
            "currency": tx.currency,
            "fee": str(tx.fee.amount),
            "status": tx.status.value,
        })
        return replace(tx)

    async def find(self, transaction_id: str) -> Optional[Transaction]:
        return await self._store.get_transaction(transaction_id)

    async def get(self, transaction_id: str) -> Transaction:
        tx = await self._store.get_transaction(transaction_id)
        if tx is None:
            raise TransactionNotFoundError(transaction_id)
        return tx

    async def list_recent(self, limit: int = 50) -> list[Transaction]:
        return await self._store.list_transactions(limit)

    async def list_by_customer(self, email: str, limit: int = 50) -> list[Transaction]:
        return await self._store.list_transactions(limit, customer_email=email)

    async def history(self, transaction_id: str) -> list[StatusChange]:
        await self.get(transaction_id)
        return await self._store.list_changes(transaction_id)

    async def attach_provider_details(
        self,
        transaction_id: str,
        provider_payment_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> Transaction:
        """Fill in provider identifiers without changing status."""
        tx = await self.get(transaction_id)
        if _fill_details(tx, provider_payment_id, redirect_url):
            await self._store.save_transaction(tx)
        return tx

    async def update_status(
        self,
        transaction_id: str,
        new_status: TransactionStatus,
        *,
        source: ChangeSource,
        raw: Optional[dict[str, Any]] = None,
        error: Optional[str] = None,
        error_code: Optional[str] = None,
        provider_payment_id: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> Transaction:
        """
        Apply a status change.

        Updating to the current status is a no-op (apart from filling in
        provider identifiers). Leaving a terminal state is rejected, and a
        rejected change writes nothing, provider identifiers included.

        Raises:
            TransactionNotFoundError: Unknown transaction id.
            InvalidTransitionError: The change would regress a terminal state.
        """
        tx = await self.get(transaction_id)
        if tx.status is new_status:
            if _fill_details(tx, provider_payment_id, redirect_url):
                await self._store.save_transaction(tx)
            return tx

        if not can_transition(tx, new_status):
            logger.warning(
                "ANOMALY | txn=%s rejected %s -> %s (source=%s)",
                tx.id, tx.status.value, new_status.value, source.value,
            )
            await self._audit.record("transition_rejected", tx.id, {
                "current": tx.status.value,
                "requested": new_status.value,
                "source": source.value,
                "error": error,
            })
            raise InvalidTransitionError(tx.id, tx.status.value, new_status.value)

        _fill_details(tx, provider_payment_id, redirect_url)
        change = _apply_transition(tx, new_status, source, raw, error, error_code)
        await self._store.save_transaction(tx, change)
        await self._changed(tx, change)
        return replace(tx)

    async def _changed(self, tx: Transaction, change: StatusChange) -> None:
        await self._audit.record("status_changed", tx.id, {
            "from": change.from_status.value if change.from_status else None,
            "to": change.to_status.value,
            "source": change.source.value,
            "error": change.error,
        })
        logger.info(
            "Transaction %s: %s -> %s (%s)",
            tx.id, change.from_status.value if change.from_status else "-",
            change.to_status.value, change.source.value,
        )
        await self._notify(tx, change)

    async def _notify(self, tx: Transaction, change: StatusChange) -> None:
        for listener in self._listeners:
            try:
                await listener(replace(tx), change)
            except Exception:
                logger.exception("Status listener failed for txn=%s", tx.id)

    # ─── Refunds ───────────────────────────────────────────────────────

    async def list_refunds(self, transaction_id: str) -> list[RefundRecord]:
        return await self._store.list_refunds(transaction_id)

    async def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        return await self._store.get_refund(refund_id)

    async def find_refund_by_provider_id(
        self, provider: str, provider_refund_id: str
    ) -> Optional[RefundRecord]:
        return await self._store.find_refund_by_provider_id(provider, provider_refund_id)

    async def refundable_balance(self, transaction_id: str) -> Decimal:
        """Original amount minus completed and in-flight (pending) refunds."""
        tx = await self.get(transaction_id)
        reserved = sum(
            (r.amount for r in await self._store.list_refunds(transaction_id)
             if r.status in (RefundStatus.PENDING, RefundStatus.COMPLETED)),
            Decimal("0"),
        )
        return tx.amount - reserved

    async def add_refund(self, refund: RefundRecord) -> RefundRecord:
        await self._store.insert_refund(refund)
        await self._audit.record("refund_requested", refund.transaction_id, {
            "refund_id": refund.id,
            "amount": str(refund.amount),
            "currency": refund.currency,
        })
        return replace(refund)

    async def settle_refund(
        self,
        refund_id: str,
        status: RefundStatus,
        *,
        source: ChangeSource = ChangeSource.REFUND,
        provider_refund_id: Optional[str] = None,
        error: Optional[str] = None,
        raw: Optional[dict[str, Any]] = None,
    ) -> RefundRecord:
        """
        Record a refund outcome.

        When completed refunds add up to the full original amount, the parent
        transaction moves to ``refunded``.

        Raises:
            InvalidTransitionError: Refund already settled differently.
        """
        refund = await self._store.get_refund(refund_id)
        if refund is None:
            raise TransactionNotFoundError(refund_id)

        if provider_refund_id:
            refund.provider_refund_id = provider_refund_id
        if refund.status is status:
            await self._store.save_refund(refund)
            return refund
        if refund.status is not RefundStatus.PENDING:
            logger.warning(
                "ANOMALY | refund=%s rejected %s -> %s",
                refund.id, refund.status.value, status.value,
            )
            await self._audit.record("refund_transition_rejected", refund.transaction_id, {
                "refund_id": refund.id,
                "current": refund.status.value,
                "requested": status.value,
            })
            raise InvalidTransitionError(refund.id, refund.status.value, status.value)

        refund.status = status
        refund.error = error
        refund.updated_at = utcnow()

        tx: Optional[Transaction] = None
        change: Optional[StatusChange] = None
        if status is RefundStatus.COMPLETED:
            tx = await self.get(refund.transaction_id)
            tx.refunded_amount += refund.amount
            tx.updated_at = utcnow()
            if tx.refunded_amount >= tx.amount and tx.status is not TransactionStatus.REFUNDED:
                if can_transition(tx, TransactionStatus.REFUNDED):
                    change = _apply_transition(
                        tx, TransactionStatus.REFUNDED, source, raw, None, None
                    )
                else:
                    logger.warning(
                        "ANOMALY | txn=%s fully refunded while %s",
                        tx.id, tx.status.value,
                    )

        await self._store.save_refund(refund, tx, change)
        await self._audit.record(f"refund_{status.value}", refund.transaction_id, {
            "refund_id": refund.id,
            "provider_refund_id": refund.provider_refund_id,
            "amount": str(refund.amount),
            "error": error,
        })

        if tx is not None and change is not None:
            await self._changed(tx, change)
        return refund

    # ─── Webhooks ──────────────────────────────────────────────────────

    async def record_webhook(self, event: WebhookEvent) -> bool:
        """False if this (provider, event id) was already recorded."""
        return await self._store.insert_webhook(event)

    async def save_webhook(self, event: WebhookEvent) -> None:
        await self._store.save_webhook(event)

    async def get_webhook(self, provider: str, provider_event_id: str) -> Optional[WebhookEvent]:
        return await self._store.get_webhook(provider, provider_event_id)

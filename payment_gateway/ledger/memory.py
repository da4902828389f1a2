"""In-memory ledger store for tests and local development."""

from copy import deepcopy
from typing import Optional

from payment_gateway.errors import DuplicateTransactionError
from payment_gateway.ledger.base import LedgerStore
from payment_gateway.models.domain import (
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
)


class InMemoryLedgerStore(LedgerStore):
    """Dict-backed store. Every read and write goes through a deep copy."""

    def __init__(self) -> None:
        self._transactions: dict[str, Transaction] = {}
        self._changes: dict[str, list[StatusChange]] = {}
        self._refunds: dict[str, RefundRecord] = {}
        self._webhooks: dict[tuple[str, str], WebhookEvent] = {}

    async def insert_transaction(self, tx: Transaction, change: StatusChange) -> None:
        if tx.id in self._transactions:
            raise DuplicateTransactionError(f"Transaction already exists: {tx.id}")
        self._transactions[tx.id] = deepcopy(tx)
        self._changes[tx.id] = [change]

    async def save_transaction(self, tx: Transaction, change: Optional[StatusChange] = None) -> None:
        self._transactions[tx.id] = deepcopy(tx)
        if change is not None:
            self._changes.setdefault(change.transaction_id, []).append(change)

    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        tx = self._transactions.get(transaction_id)
        return deepcopy(tx) if tx else None

    async def list_transactions(
        self, limit: int, customer_email: Optional[str] = None
    ) -> list[Transaction]:
        # Insertion order breaks created_at ties
        indexed = list(enumerate(self._transactions.values()))
        if customer_email:
            wanted = customer_email.lower()
            indexed = [(i, t) for i, t in indexed if t.customer_email.lower() == wanted]
        indexed.sort(key=lambda item: (item[1].created_at, item[0]), reverse=True)
        return [deepcopy(t) for _, t in indexed[:limit]]

    async def list_changes(self, transaction_id: str) -> list[StatusChange]:
        return list(self._changes.get(transaction_id, []))

    async def insert_refund(self, refund: RefundRecord) -> None:
        if refund.id in self._refunds:
            raise DuplicateTransactionError(f"Refund already exists: {refund.id}")
        self._refunds[refund.id] = deepcopy(refund)

    async def save_refund(
        self,
        refund: RefundRecord,
        tx: Optional[Transaction] = None,
        change: Optional[StatusChange] = None,
    ) -> None:
        self._refunds[refund.id] = deepcopy(refund)
        if tx is not None:
            await self.save_transaction(tx, change)

    async def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        refund = self._refunds.get(refund_id)
        return deepcopy(refund) if refund else None

    async def find_refund_by_provider_id(
        self, provider: str, provider_refund_id: str
    ) -> Optional[RefundRecord]:
        for refund in self._refunds.values():
            if refund.provider == provider and refund.provider_refund_id == provider_refund_id:
                return deepcopy(refund)
        return None

    async def list_refunds(self, transaction_id: str) -> list[RefundRecord]:
        refunds = [r for r in self._refunds.values() if r.transaction_id == transaction_id]
        return [deepcopy(r) for r in sorted(refunds, key=lambda r: r.created_at)]

    async def insert_webhook(self, event: WebhookEvent) -> bool:
        if event.dedupe_key in self._webhooks:
            return False
        self._webhooks[event.dedupe_key] = deepcopy(event)
        return True

    async def save_webhook(self, event: WebhookEvent) -> None:
        self._webhooks[event.dedupe_key] = deepcopy(event)

    async def get_webhook(self, provider: str, provider_event_id: str) -> Optional[WebhookEvent]:
        event = self._webhooks.get((provider, provider_event_id))
        return deepcopy(event) if event else None

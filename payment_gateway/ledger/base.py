"""
Abstract ledger storage interface.

The ledger's invariants (no duplicate ids, no regression from terminal
states, refund bound, webhook dedup) are enforced by ``TransactionLedger``
on top of any store. Stores only persist and fetch; they hand out copies so
callers can never mutate stored state by accident.
"""

from abc import ABC, abstractmethod
from typing import Optional

from payment_gateway.models.domain import (
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
)


class LedgerStore(ABC):
    """Abstract base class for ledger backends."""

    @abstractmethod
    async def insert_transaction(self, tx: Transaction, change: StatusChange) -> None:
        """
        Persist a new transaction together with its creation entry.

        Raises:
            DuplicateTransactionError: If the id already exists.
        """
        ...

    @abstractmethod
    async def save_transaction(self, tx: Transaction, change: Optional[StatusChange] = None) -> None:
        """
        Overwrite a transaction snapshot.

        When ``change`` is given it is appended to the history in the same
        write, so a status never lands without its history entry.
        """
        ...

    @abstractmethod
    async def get_transaction(self, transaction_id: str) -> Optional[Transaction]:
        ...

    @abstractmethod
    async def list_transactions(
        self, limit: int, customer_email: Optional[str] = None
    ) -> list[Transaction]:
        """Newest first, optionally restricted to one customer."""
        ...

    @abstractmethod
    async def list_changes(self, transaction_id: str) -> list[StatusChange]:
        """Oldest first."""
        ...

    @abstractmethod
    async def insert_refund(self, refund: RefundRecord) -> None:
        ...

    @abstractmethod
    async def save_refund(
        self,
        refund: RefundRecord,
        tx: Optional[Transaction] = None,
        change: Optional[StatusChange] = None,
    ) -> None:
        """Overwrite a refund, and its parent snapshot and history entry if given, in one write."""
        ...

    @abstractmethod
    async def get_refund(self, refund_id: str) -> Optional[RefundRecord]:
        ...

    @abstractmethod
    async def find_refund_by_provider_id(
        self, provider: str, provider_refund_id: str
    ) -> Optional[RefundRecord]:
        ...

    @abstractmethod
    async def list_refunds(self, transaction_id: str) -> list[RefundRecord]:
        """Oldest first."""
        ...

    @abstractmethod
    async def insert_webhook(self, event: WebhookEvent) -> bool:
        """
        Persist a webhook delivery.

        Returns:
            False if an event with the same (provider, provider_event_id)
            already exists; nothing is written in that case.
        """
        ...

    @abstractmethod
    async def save_webhook(self, event: WebhookEvent) -> None:
        ...

    @abstractmethod
    async def get_webhook(self, provider: str, provider_event_id: str) -> Optional[WebhookEvent]:
        ...

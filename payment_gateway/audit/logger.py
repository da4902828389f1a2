"""
Immutable audit trail for payment operations.

Every state transition and every rejected or suspicious operation is copied
to an audit sink with:
  - Transaction ID (which payment it relates to, if any)
  - Action (what happened)
  - Details (context, error messages, routing decisions)
  - Timestamp (UTC)

Auditing is fire-and-forget: a failing sink is logged and never blocks or
fails a payment.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_gateway.models.ledger import AuditLog

logger = logging.getLogger("payment_gateway.audit")


def _dumps(details: Optional[dict[str, Any]]) -> Optional[str]:
    return json.dumps(details, default=str) if details else None


class AuditSink(ABC):
    """Receives a copy of every state transition and security event."""

    #: I/O-bound sinks write from a background task, off the transaction lock.
    background = False

    def __init__(self) -> None:
        self._pending: set[asyncio.Task] = set()

    @abstractmethod
    async def write(
        self,
        action: str,
        transaction_id: Optional[str],
        details: Optional[dict[str, Any]],
        timestamp: datetime,
    ) -> None:
        ...

    async def record(
        self,
        action: str,
        transaction_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        """
        Write an audit entry without ever raising.

        Background sinks return as soon as the write is scheduled; call
        :meth:`drain` before shutdown to flush them.

        Args:
            action: What happened (e.g. "payment_created", "status_changed",
                "webhook_rejected").
            transaction_id: The transaction this event relates to.
            details: Arbitrary context (serialized to JSON).
        """
        logger.info(
            "AUDIT | txn=%s action=%s | %s",
            transaction_id or "-",
            action,
            (_dumps(details) or "")[:200],
        )
        write = self._safe_write(action, transaction_id, details, datetime.now(timezone.utc))
        if not self.background:
            await write
            return
        task = asyncio.create_task(write)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _safe_write(self, action, transaction_id, details, timestamp) -> None:
        try:
            await self.write(action, transaction_id, details, timestamp)
        except Exception:
            logger.exception("Audit sink failed for action=%s txn=%s", action, transaction_id)

    async def drain(self) -> None:
        """Wait for scheduled background writes to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending))


class LoggingAuditSink(AuditSink):
    """Audit trail in the application log only."""

    async def write(self, action, transaction_id, details, timestamp) -> None:
        return None


class MemoryAuditSink(AuditSink):
    """Keeps entries in a list. Used by tests and local runs."""

    def __init__(self) -> None:
        super().__init__()
        self.entries: list[dict[str, Any]] = []

    async def write(self, action, transaction_id, details, timestamp) -> None:
        self.entries.append({
            "action": action,
            "transaction_id": transaction_id,
            "details": details or {},
            "timestamp": timestamp,
        })

    def actions(self, transaction_id: Optional[str] = None) -> list[str]:
        return [
            e["action"] for e in self.entries
            if transaction_id is None or e["transaction_id"] == transaction_id
        ]


class SqlAuditSink(AuditSink):
    """Persists entries to the ``audit_logs`` table."""

    background = True

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        super().__init__()
        self._session_factory = session_factory

    async def write(self, action, transaction_id, details, timestamp) -> None:
        async with self._session_factory() as session:
            session.add(AuditLog(
                transaction_id=transaction_id,
                action=action,
                details=_dumps(details),
                timestamp=timestamp,
            ))
            await session.commit()

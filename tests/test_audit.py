"""Tests for the audit sinks."""

import asyncio
import json
import logging

import pytest
from sqlalchemy import select

from payment_gateway.audit.logger import AuditSink, MemoryAuditSink, SqlAuditSink
from payment_gateway.engine.gateway import PaymentGateway
from payment_gateway.ledger import InMemoryLedgerStore, TransactionLedger
from payment_gateway.models.ledger import AuditLog


class BrokenSink(AuditSink):
    async def write(self, action, transaction_id, details, timestamp) -> None:
        raise RuntimeError("disk full")


@pytest.mark.asyncio
async def test_memory_sink_records_entries():
    sink = MemoryAuditSink()
    await sink.record("payment_created", "txn_1", {"provider": "paypal"})
    await sink.record("webhook_rejected", None, {"provider": "paystack"})

    assert sink.actions() == ["payment_created", "webhook_rejected"]
    assert sink.actions("txn_1") == ["payment_created"]
    assert sink.entries[0]["details"] == {"provider": "paypal"}


@pytest.mark.asyncio
async def test_sql_sink_persists(session_factory):
    sink = SqlAuditSink(session_factory)
    await sink.record("status_changed", "txn_1", {"from": "pending", "to": "completed"})
    await sink.drain()

    async with session_factory() as session:
        rows = (await session.execute(select(AuditLog))).scalars().all()

    assert len(rows) == 1
    assert rows[0].action == "status_changed"
    assert rows[0].transaction_id == "txn_1"
    assert json.loads(rows[0].details) == {"from": "pending", "to": "completed"}


@pytest.mark.asyncio
async def test_failing_sink_never_raises(caplog):
    with caplog.at_level(logging.ERROR, logger="payment_gateway.audit"):
        await BrokenSink().record("payment_created", "txn_1")
    assert "Audit sink failed" in caplog.text


class SlowSink(AuditSink):
    background = True

    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()
        self.written: list[str] = []

    async def write(self, action, transaction_id, details, timestamp) -> None:
        await self.release.wait()
        self.written.append(action)


@pytest.mark.asyncio
async def test_background_sink_does_not_block_caller():
    sink = SlowSink()
    await asyncio.wait_for(sink.record("status_changed", "txn_1"), timeout=1)
    assert sink.written == []

    sink.release.set()
    await sink.drain()
    assert sink.written == ["status_changed"]


@pytest.mark.asyncio
async def test_background_failure_is_logged(caplog):
    class BrokenBackgroundSink(BrokenSink):
        background = True

    sink = BrokenBackgroundSink()
    with caplog.at_level(logging.ERROR, logger="payment_gateway.audit"):
        await sink.record("payment_created", "txn_1")
        await sink.drain()
    assert "Audit sink failed" in caplog.text


@pytest.mark.asyncio
async def test_gateway_close_flushes_audit():
    sink = SlowSink()
    gateway = PaymentGateway(TransactionLedger(InMemoryLedgerStore(), sink), {})
    await sink.record("payment_created", "txn_1")
    sink.release.set()

    await gateway.aclose()
    assert sink.written == ["payment_created"]

"""Tests for the transaction ledger, run against both storage backends."""

import asyncio
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.exc import IntegrityError

from payment_gateway.audit.logger import MemoryAuditSink
from payment_gateway.errors import (
    AmbiguousOutcomeError,
    DuplicateTransactionError,
    InvalidTransitionError,
    TransactionNotFoundError,
)
from payment_gateway.ledger import InMemoryLedgerStore, KeyedLock, SqlLedgerStore, TransactionLedger
from payment_gateway.ledger import sql as sql_store
from payment_gateway.models.domain import RefundRecord, WebhookEvent
from payment_gateway.models.enums import ChangeSource, RefundStatus, TransactionStatus
from payment_gateway.models.ledger import TransactionChangeRow

TERMINAL = [
    TransactionStatus.COMPLETED,
    TransactionStatus.FAILED,
    TransactionStatus.CANCELLED,
    TransactionStatus.REFUNDED,
]


@pytest_asyncio.fixture(params=["memory", "sql"])
async def store_ledger(request, session_factory):
    audit = MemoryAuditSink()
    if request.param == "memory":
        store = InMemoryLedgerStore()
    else:
        store = SqlLedgerStore(session_factory)
    return TransactionLedger(store, audit)


class TestCreateAndRead:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        tx = await store_ledger.get("txn_test_001")
        assert tx.status is TransactionStatus.PENDING
        assert tx.amount == Decimal("100.00")
        assert tx.fee.amount == Decimal("3.20")

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        with pytest.raises(DuplicateTransactionError):
            await store_ledger.create(make_transaction())

    @pytest.mark.asyncio
    async def test_get_unknown(self, store_ledger):
        with pytest.raises(TransactionNotFoundError):
            await store_ledger.get("txn_missing")
        assert await store_ledger.find("txn_missing") is None

    @pytest.mark.asyncio
    async def test_returned_copies_are_detached(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        tx = await store_ledger.get("txn_test_001")
        tx.status = TransactionStatus.COMPLETED
        assert (await store_ledger.get("txn_test_001")).status is TransactionStatus.PENDING

    @pytest.mark.asyncio
    async def test_list_recent_newest_first(self, store_ledger, make_transaction):
        for i in range(5):
            await store_ledger.create(make_transaction(f"txn_{i}"))
        recent = await store_ledger.list_recent(limit=3)
        assert [t.id for t in recent] == ["txn_4", "txn_3", "txn_2"]

    @pytest.mark.asyncio
    async def test_list_by_customer(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction("txn_a", customer_email="ada@example.com"))
        await store_ledger.create(make_transaction("txn_b", customer_email="bob@example.com"))
        await store_ledger.create(make_transaction("txn_c", customer_email="ada@example.com"))
        txs = await store_ledger.list_by_customer("ADA@example.com")
        assert {t.id for t in txs} == {"txn_a", "txn_c"}


class TestTransitions:
    @pytest.mark.asyncio
    async def test_pending_to_completed(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        tx = await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.COMPLETED,
            source=ChangeSource.ADAPTER,
            provider_payment_id="PAY-1",
        )
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.provider_payment_id == "PAY-1"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", TERMINAL)
    async def test_no_regression_to_pending(self, store_ledger, make_transaction, terminal):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status("txn_test_001", terminal, source=ChangeSource.ADAPTER)
        with pytest.raises(InvalidTransitionError):
            await store_ledger.update_status(
                "txn_test_001", TransactionStatus.PENDING, source=ChangeSource.WEBHOOK
            )
        assert (await store_ledger.get("txn_test_001")).status is terminal

    @pytest.mark.asyncio
    async def test_no_terminal_to_terminal(self, store_ledger, make_transaction):
        """First terminal writer wins."""
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.WEBHOOK
        )
        with pytest.raises(InvalidTransitionError):
            await store_ledger.update_status(
                "txn_test_001", TransactionStatus.FAILED, source=ChangeSource.VERIFY
            )
        assert "transition_rejected" in store_ledger.audit.actions("txn_test_001")

    @pytest.mark.asyncio
    async def test_completed_to_refunded_allowed(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )
        tx = await store_ledger.update_status(
            "txn_test_001", TransactionStatus.REFUNDED, source=ChangeSource.WEBHOOK
        )
        assert tx.status is TransactionStatus.REFUNDED

    @pytest.mark.asyncio
    async def test_same_status_is_noop(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.WEBHOOK
        )
        history = await store_ledger.history("txn_test_001")
        assert len(history) == 2

    @pytest.mark.asyncio
    async def test_rejected_change_writes_nothing(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.COMPLETED,
            source=ChangeSource.ADAPTER,
            provider_payment_id="ch_original",
        )
        with pytest.raises(InvalidTransitionError):
            await store_ledger.update_status(
                "txn_test_001",
                TransactionStatus.FAILED,
                source=ChangeSource.WEBHOOK,
                provider_payment_id="ch_other",
                redirect_url="https://elsewhere.test/pay",
            )
        tx = await store_ledger.get("txn_test_001")
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.provider_payment_id == "ch_original"
        assert tx.redirect_url is None
        assert len(await store_ledger.history("txn_test_001")) == 2

    @pytest.mark.asyncio
    async def test_same_status_fills_in_details(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        tx = await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.PENDING,
            source=ChangeSource.ADAPTER,
            provider_payment_id="ch_1",
            redirect_url="https://checkout.test/ch_1",
        )
        assert tx.provider_payment_id == "ch_1"
        stored = await store_ledger.get("txn_test_001")
        assert stored.redirect_url == "https://checkout.test/ch_1"
        assert len(await store_ledger.history("txn_test_001")) == 1

    @pytest.mark.asyncio
    async def test_ambiguous_failure_recovers(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.FAILED,
            source=ChangeSource.TIMEOUT,
            error="timed out",
            error_code=AmbiguousOutcomeError.code,
        )
        tx = await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.VERIFY
        )
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.error is None
        assert tx.error_code is None

    @pytest.mark.asyncio
    async def test_plain_failure_is_final(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.FAILED,
            source=ChangeSource.ADAPTER,
            error="Card declined",
            error_code="provider_declined",
        )
        with pytest.raises(InvalidTransitionError):
            await store_ledger.update_status(
                "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.VERIFY
            )

    @pytest.mark.asyncio
    async def test_history_records_every_change(self, store_ledger, make_transaction):
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001",
            TransactionStatus.COMPLETED,
            source=ChangeSource.ADAPTER,
            raw={"amount": Decimal("100.00"), "id": "PAY-1"},
        )
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.REFUNDED, source=ChangeSource.REFUND
        )
        history = await store_ledger.history("txn_test_001")
        assert [(c.from_status, c.to_status) for c in history] == [
            (None, TransactionStatus.PENDING),
            (TransactionStatus.PENDING, TransactionStatus.COMPLETED),
            (TransactionStatus.COMPLETED, TransactionStatus.REFUNDED),
        ]
        assert history[1].source is ChangeSource.ADAPTER
        assert history[1].raw == {"amount": "100.00", "id": "PAY-1"}

    @pytest.mark.asyncio
    async def test_listeners_notified(self, store_ledger, make_transaction):
        seen = []

        async def listener(tx, change):
            seen.append((tx.id, change.to_status))

        store_ledger.subscribe(listener)
        await store_ledger.create(make_transaction())
        await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )
        assert seen == [("txn_test_001", TransactionStatus.COMPLETED)]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_block(self, store_ledger, make_transaction):
        async def broken(tx, change):
            raise RuntimeError("listener down")

        store_ledger.subscribe(broken)
        await store_ledger.create(make_transaction())
        tx = await store_ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )
        assert tx.status is TransactionStatus.COMPLETED


class TestRefundBookkeeping:
    async def _completed(self, ledger, make_transaction):
        await ledger.create(make_transaction())
        await ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )

    def _refund(self, refund_id: str, amount: str) -> RefundRecord:
        return RefundRecord(
            id=refund_id,
            transaction_id="txn_test_001",
            provider="paypal",
            amount=Decimal(amount),
            currency="USD",
        )

    @pytest.mark.asyncio
    async def test_pending_refund_reserves_balance(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        assert await store_ledger.refundable_balance("txn_test_001") == Decimal("60.00")

    @pytest.mark.asyncio
    async def test_failed_refund_releases_balance(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        await store_ledger.settle_refund("rfd_1", RefundStatus.FAILED, error="rejected")
        assert await store_ledger.refundable_balance("txn_test_001") == Decimal("100.00")

    @pytest.mark.asyncio
    async def test_full_refund_moves_parent(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        await store_ledger.settle_refund("rfd_1", RefundStatus.COMPLETED, provider_refund_id="R-1")
        tx = await store_ledger.get("txn_test_001")
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.refunded_amount == Decimal("40.00")

        await store_ledger.add_refund(self._refund("rfd_2", "60.00"))
        await store_ledger.settle_refund("rfd_2", RefundStatus.COMPLETED, provider_refund_id="R-2")
        tx = await store_ledger.get("txn_test_001")
        assert tx.status is TransactionStatus.REFUNDED
        assert tx.remaining_refundable == Decimal("0")

    @pytest.mark.asyncio
    async def test_settle_is_idempotent(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        await store_ledger.settle_refund("rfd_1", RefundStatus.COMPLETED)
        await store_ledger.settle_refund("rfd_1", RefundStatus.COMPLETED)
        tx = await store_ledger.get("txn_test_001")
        assert tx.refunded_amount == Decimal("40.00")

    @pytest.mark.asyncio
    async def test_settled_refund_cannot_flip(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        await store_ledger.settle_refund("rfd_1", RefundStatus.COMPLETED)
        with pytest.raises(InvalidTransitionError):
            await store_ledger.settle_refund("rfd_1", RefundStatus.FAILED)

    @pytest.mark.asyncio
    async def test_find_refund_by_provider_id(self, store_ledger, make_transaction):
        await self._completed(store_ledger, make_transaction)
        await store_ledger.add_refund(self._refund("rfd_1", "40.00"))
        await store_ledger.settle_refund("rfd_1", RefundStatus.PENDING, provider_refund_id="R-1")
        found = await store_ledger.find_refund_by_provider_id("paypal", "R-1")
        assert found is not None and found.id == "rfd_1"
        assert await store_ledger.find_refund_by_provider_id("paystack", "R-1") is None


class TestWebhookDedup:
    @pytest.mark.asyncio
    async def test_second_insert_rejected(self, store_ledger):
        event = WebhookEvent(provider="paystack", payload="{}", signature="sig", provider_event_id="evt_1")
        assert await store_ledger.record_webhook(event) is True
        assert await store_ledger.record_webhook(event) is False

    @pytest.mark.asyncio
    async def test_same_event_id_other_provider(self, store_ledger):
        first = WebhookEvent(provider="paystack", payload="{}", signature="s", provider_event_id="evt_1")
        second = WebhookEvent(provider="paypal", payload="{}", signature="s", provider_event_id="evt_1")
        assert await store_ledger.record_webhook(first) is True
        assert await store_ledger.record_webhook(second) is True


class TestKeyedLock:
    @pytest.mark.asyncio
    async def test_same_key_serializes(self):
        locks = KeyedLock()
        order = []

        async def worker(name):
            async with locks.hold("txn_1"):
                order.append(f"{name}-in")
                await asyncio.sleep(0.01)
                order.append(f"{name}-out")

        await asyncio.gather(worker("a"), worker("b"))
        assert order in (["a-in", "a-out", "b-in", "b-out"], ["b-in", "b-out", "a-in", "a-out"])
        assert len(locks) == 0

    @pytest.mark.asyncio
    async def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        async with locks.hold("txn_1"):
            await asyncio.wait_for(self._enter(locks, "txn_2"), timeout=1)

    async def _enter(self, locks, key):
        async with locks.hold(key):
            return True


class TestAtomicWrites:
    """A status and its history entry are stored together or not at all."""

    @pytest.fixture
    def broken_history(self, monkeypatch):
        def failing_row(change):
            # to_status is NOT NULL, so the commit fails after the snapshot is staged
            return TransactionChangeRow(
                transaction_id=change.transaction_id, to_status=None, source=change.source.value
            )

        def install():
            monkeypatch.setattr(sql_store, "_change_row", failing_row)
        return install

    @pytest.mark.asyncio
    async def test_status_rolled_back_with_history(
        self, session_factory, make_transaction, broken_history
    ):
        ledger = TransactionLedger(SqlLedgerStore(session_factory), MemoryAuditSink())
        await ledger.create(make_transaction())
        broken_history()

        with pytest.raises(IntegrityError):
            await ledger.update_status(
                "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.WEBHOOK
            )

        tx = await ledger.get("txn_test_001")
        assert tx.status is TransactionStatus.PENDING
        assert [c.to_status for c in await ledger.history("txn_test_001")] == [
            TransactionStatus.PENDING
        ]

    @pytest.mark.asyncio
    async def test_refund_settlement_rolled_back_with_history(
        self, session_factory, make_transaction, broken_history
    ):
        ledger = TransactionLedger(SqlLedgerStore(session_factory), MemoryAuditSink())
        await ledger.create(make_transaction())
        await ledger.update_status(
            "txn_test_001", TransactionStatus.COMPLETED, source=ChangeSource.ADAPTER
        )
        await ledger.add_refund(RefundRecord(
            id="rfd_1", transaction_id="txn_test_001", provider="paypal",
            amount=Decimal("100.00"), currency="USD",
        ))
        broken_history()

        with pytest.raises(IntegrityError):
            await ledger.settle_refund("rfd_1", RefundStatus.COMPLETED)

        refund = await ledger.get_refund("rfd_1")
        tx = await ledger.get("txn_test_001")
        assert refund.status is RefundStatus.PENDING
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.refunded_amount == Decimal("0")
        assert len(await ledger.history("txn_test_001")) == 2

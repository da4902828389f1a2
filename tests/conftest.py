"""Shared test fixtures."""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from payment_gateway.audit.logger import MemoryAuditSink
from payment_gateway.engine.gateway import PaymentGateway
from payment_gateway.ledger import InMemoryLedgerStore, TransactionLedger
from payment_gateway.models.domain import Fee, PaymentIntent, Transaction
from payment_gateway.models.ledger import Base
from payment_gateway.providers.mock_provider import MockPaymentProvider
from payment_gateway.routing.provider_catalog import DEFAULT_PROVIDERS, PAYPAL, PAYSTACK


@pytest_asyncio.fixture
async def session_factory():
    """Fresh in-memory database for each test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", echo=False, poolclass=StaticPool
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def audit():
    return MemoryAuditSink()


@pytest.fixture
def ledger(audit):
    return TransactionLedger(InMemoryLedgerStore(), audit)


@pytest.fixture
def paypal():
    return MockPaymentProvider(
        name="paypal", supported_currencies=set(PAYPAL.supported_currencies)
    )


@pytest.fixture
def paystack():
    return MockPaymentProvider(
        name="paystack", supported_currencies=set(PAYSTACK.supported_currencies)
    )


@pytest.fixture
def gateway(ledger, paypal, paystack):
    return PaymentGateway(
        ledger,
        {"paypal": paypal, "paystack": paystack},
        DEFAULT_PROVIDERS,
        max_amount=Decimal("1000000.00"),
        timeout=5.0,
        retry_base_delay=0,
    )


@pytest.fixture
def make_intent():
    """Factory for a valid USD 100.00 intent, with overrides."""
    def _factory(**overrides) -> PaymentIntent:
        fields = {
            "amount": Decimal("100.00"),
            "currency": "USD",
            "description": "Pro plan, monthly",
            "customer_email": "a@b.com",
        }
        fields.update(overrides)
        return PaymentIntent(**fields)
    return _factory


@pytest.fixture
def make_transaction():
    def _factory(tx_id: str = "txn_test_001", **overrides) -> Transaction:
        fields = {
            "id": tx_id,
            "provider": "paypal",
            "amount": Decimal("100.00"),
            "currency": "USD",
            "fee": Fee(amount=Decimal("3.20"), currency="USD"),
            "customer_email": "a@b.com",
            "description": "Pro plan, monthly",
        }
        fields.update(overrides)
        return Transaction(**fields)
    return _factory

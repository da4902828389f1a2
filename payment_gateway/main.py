"""
Payment Gateway — provider-agnostic payments API.

Routes payments to PayPal or Paystack, normalizes their responses and
webhooks, and keeps an append-only ledger of every transaction, refund and
webhook event.

Start the server:
    uvicorn payment_gateway.main:app --reload
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from payment_gateway.api.health import router as health_router
from payment_gateway.api.payments import router as payments_router
from payment_gateway.api.webhooks import router as webhooks_router
from payment_gateway.config import settings
from payment_gateway.database import async_session, init_db
from payment_gateway.engine.gateway import build_gateway
from payment_gateway.errors import (
    AmbiguousOutcomeError,
    DuplicateTransactionError,
    GatewayError,
    InsufficientRefundableBalanceError,
    InvalidTransitionError,
    ProviderError,
    RefundNotAllowedError,
    SignatureVerificationError,
    TransactionNotFoundError,
    UnknownProviderError,
    ValidationError,
)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

# First match wins, so subclasses come before their bases
ERROR_STATUS_CODES: list[tuple[type[GatewayError], int]] = [
    (ValidationError, 422),
    (TransactionNotFoundError, 404),
    (UnknownProviderError, 404),
    (SignatureVerificationError, 401),
    (DuplicateTransactionError, 409),
    (InvalidTransitionError, 409),
    (RefundNotAllowedError, 409),
    (InsufficientRefundableBalanceError, 409),
    (AmbiguousOutcomeError, 504),
    (ProviderError, 502),
]


def status_code_for(exc: GatewayError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and wire the gateway on startup."""
    if settings.ledger_backend == "sql":
        await init_db()
    app.state.gateway = build_gateway(settings, async_session)
    yield
    await app.state.gateway.aclose()


app = FastAPI(
    title="Payment Gateway",
    description=(
        "Provider-agnostic payment gateway with PayPal and Paystack adapters, "
        "fee calculation, signed webhook ingestion and an append-only "
        "transaction ledger."
    ),
    version="0.1.0",
    lifespan=lifespan,
)


@app.exception_handler(GatewayError)
async def gateway_error_handler(request: Request, exc: GatewayError):
    return JSONResponse(
        status_code=status_code_for(exc),
        content={"error": exc.code, "detail": exc.message},
    )


app.include_router(health_router)
app.include_router(payments_router, prefix="/api")
app.include_router(webhooks_router)

"""Liveness endpoint."""

from fastapi import APIRouter, Depends

from payment_gateway.api.deps import get_gateway
from payment_gateway.engine.gateway import PaymentGateway

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(gateway: PaymentGateway = Depends(get_gateway)):
    return {
        "status": "ok",
        "providers": [p.name for p in gateway.get_providers()],
    }

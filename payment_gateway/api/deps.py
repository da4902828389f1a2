"""Request-scoped access to the gateway built at startup."""

from fastapi import Request

from payment_gateway.engine.gateway import PaymentGateway


def get_gateway(request: Request) -> PaymentGateway:
    return request.app.state.gateway

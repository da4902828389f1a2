"""
Error taxonomy for the payment gateway.

Validation and ledger-invariant errors are returned to the caller and never
retried. Provider errors carry a ``retriable`` flag consumed by the retry
helper. Signature failures are security events and are logged separately
from business failures.
"""

from typing import Optional


class GatewayError(Exception):
    """Base exception for every error raised by the gateway."""

    code = "gateway_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(GatewayError):
    """Bad input. Never reaches a provider."""

    code = "validation_error"


class ProviderError(GatewayError):
    """A payment processor rejected the call or could not be reached."""

    code = "provider_error"

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        retriable: bool = True,
        provider: Optional[str] = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retriable = retriable
        self.provider = provider


class RateLimitError(ProviderError):
    """429 Too Many Requests from the payment provider."""

    code = "rate_limited"

    def __init__(
        self,
        message: str = "Rate limited",
        retry_after: float | None = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, status_code=429, retriable=True, provider=provider)
        self.retry_after = retry_after


class PermanentError(ProviderError):
    """Non-retriable provider error (declined, bad request, unsupported currency)."""

    code = "provider_declined"

    def __init__(self, message: str, status_code: int = 400, provider: Optional[str] = None):
        super().__init__(message, status_code=status_code, retriable=False, provider=provider)


class AmbiguousOutcomeError(GatewayError):
    """The provider call timed out or was cancelled before a response arrived."""

    code = "ambiguous_outcome"


class DuplicateTransactionError(GatewayError):
    code = "duplicate_transaction"


class InvalidTransitionError(GatewayError):
    code = "invalid_transition"

    def __init__(self, transaction_id: str, current: str, requested: str):
        super().__init__(
            f"Transaction {transaction_id} cannot move from {current} to {requested}"
        )
        self.transaction_id = transaction_id
        self.current = current
        self.requested = requested


class TransactionNotFoundError(GatewayError):
    code = "transaction_not_found"

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction not found: {transaction_id}")
        self.transaction_id = transaction_id


class UnknownProviderError(GatewayError):
    code = "unknown_provider"

    def __init__(self, provider: str):
        super().__init__(f"Unknown payment provider: {provider}")
        self.provider = provider


class SignatureVerificationError(GatewayError):
    """Webhook signature missing or invalid."""

    code = "invalid_signature"

    def __init__(self, message: str, provider: Optional[str] = None):
        super().__init__(message)
        self.provider = provider


class RefundNotAllowedError(GatewayError):
    """Parent transaction is not in a refundable state."""

    code = "refund_not_allowed"


class InsufficientRefundableBalanceError(GatewayError):
    code = "insufficient_refundable_balance"

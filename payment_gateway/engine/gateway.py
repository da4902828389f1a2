"""
Payment gateway: the single public entry point.

Orchestrates validation, provider selection, fee calculation, the provider
adapters and the transaction ledger. The flow for a payment:

  1. Validation (amount, currency, email, description)
  2. Provider selection (preference → currency/country → default)
  3. Fee calculation, frozen into the transaction
  4. Pending transaction recorded under the transaction id
  5. Provider call, with the transaction id as idempotency key
  6. Result recorded through the ledger's single status-transition path

Failure handling:
  - Declines and other definite provider failures → ``failed`` with the
    provider's message. The transaction is returned, not raised.
  - Timeouts, cancellation and exhausted transient errors → ``failed`` with
    error code ``ambiguous_outcome``. ``verify_payment`` is the recovery path
    if the provider did take the charge.

Per-transaction locks are held around ledger writes only, never across a
provider call, so a webhook for the same transaction is never stuck behind
a slow provider.
"""

import asyncio
import logging
from dataclasses import replace
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payment_gateway.audit.logger import LoggingAuditSink, SqlAuditSink
from payment_gateway.config import Settings
from payment_gateway.engine.fees import FeeCalculator
from payment_gateway.engine.retry import with_retry
from payment_gateway.engine.validation import validate_amount, validate_intent, validate_refund
from payment_gateway.errors import (
    AmbiguousOutcomeError,
    InsufficientRefundableBalanceError,
    InvalidTransitionError,
    ProviderError,
    RateLimitError,
    RefundNotAllowedError,
    UnknownProviderError,
)
from payment_gateway.ledger import InMemoryLedgerStore, SqlLedgerStore, TransactionLedger
from payment_gateway.ledger.ledger import Listener
from payment_gateway.models.domain import (
    PaymentIntent,
    ProviderConfig,
    RefundIntent,
    RefundRecord,
    StatusChange,
    Transaction,
    WebhookEvent,
    new_refund_id,
    new_transaction_id,
)
from payment_gateway.models.enums import ChangeSource, RefundStatus, TransactionStatus
from payment_gateway.providers.base import AdapterResult, PaymentProvider
from payment_gateway.providers.mock_provider import MockPaymentProvider
from payment_gateway.providers.paypal import PayPalAdapter
from payment_gateway.providers.paystack import PaystackAdapter
from payment_gateway.routing.provider_catalog import DEFAULT_PROVIDERS
from payment_gateway.routing.provider_selector import select_provider
from payment_gateway.webhooks.ingestor import WebhookIngestor

logger = logging.getLogger("payment_gateway.gateway")


def _is_definite(error: ProviderError) -> bool:
    """True when the provider certainly did not act on the request."""
    return isinstance(error, RateLimitError) or not error.retriable


class PaymentGateway:
    """
    Facade over the whole payment subsystem.

    Args:
        ledger: Transaction ledger (owns all state).
        providers: Adapters keyed by provider name.
        configs: Provider catalog entries in routing priority order.
        default_provider: Fallback when no provider matches a payment.
        max_amount: Largest accepted payment amount.
        timeout: Default deadline in seconds for a provider call.
        read_max_retries: Retry budget for status lookups.
        write_max_retries: Retry budget for charge and refund creation.
        retry_base_delay: First backoff delay in seconds.
    """

    def __init__(
        self,
        ledger: TransactionLedger,
        providers: Mapping[str, PaymentProvider],
        configs: Iterable[ProviderConfig] = DEFAULT_PROVIDERS,
        *,
        default_provider: str = "paypal",
        max_amount: Optional[Decimal] = None,
        timeout: float = 30.0,
        read_max_retries: int = 3,
        write_max_retries: int = 1,
        retry_base_delay: float = 0.5,
    ):
        self.ledger = ledger
        self._providers = dict(providers)
        self._configs = [c for c in configs if c.name in self._providers]
        self._fees = FeeCalculator(self._configs)
        self._webhooks = WebhookIngestor(ledger, self._providers)
        self._default_provider = default_provider
        self._max_amount = max_amount
        self._timeout = timeout
        self._read_max_retries = read_max_retries
        self._write_max_retries = write_max_retries
        self._retry_base_delay = retry_base_delay

    def adapter(self, name: str) -> PaymentProvider:
        adapter = self._providers.get(name)
        if adapter is None:
            raise UnknownProviderError(name)
        return adapter

    # ─── Payments ──────────────────────────────────────────────────────

    async def process_payment(
        self,
        intent: PaymentIntent,
        *,
        transaction_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Transaction:
        """
        Charge a customer.

        Args:
            intent: What to charge.
            transaction_id: Reuse an id to retry the same logical payment;
                an id that is already recorded returns the recorded
                transaction without contacting the provider again.
            timeout: Deadline for the provider call (defaults to the
                configured provider timeout).

        Returns:
            The transaction. Provider failures come back as ``failed``
            transactions with ``error`` set.

        Raises:
            ValidationError: Invalid intent. Nothing is recorded.
            UnknownProviderError: Preferred or selected provider not configured.
        """
        validate_intent(intent, self._max_amount)
        if intent.preferred_provider and intent.preferred_provider not in self._providers:
            raise UnknownProviderError(intent.preferred_provider)

        currency = intent.currency.strip().upper()
        provider_name = select_provider(
            self._configs,
            currency,
            country=intent.customer_country,
            preferred=intent.preferred_provider,
            default=self._default_provider,
        )
        adapter = self.adapter(provider_name)
        fee = self._fees.compute(provider_name, intent.amount, currency)

        tx = Transaction(
            id=transaction_id or new_transaction_id(),
            provider=provider_name,
            amount=intent.amount,
            currency=currency,
            fee=fee,
            customer_email=intent.customer_email.strip().lower(),
            description=intent.description.strip(),
            return_url=intent.return_url,
            cancel_url=intent.cancel_url,
            metadata=dict(intent.metadata),
        )

        async with self.ledger.lock(tx.id):
            existing = await self.ledger.find(tx.id)
            if existing is not None:
                logger.info("Transaction %s already recorded, returning it", tx.id)
                return existing
            await self.ledger.create(tx)

        logger.info(
            "Routing txn=%s %s %s to %s (fee %s)",
            tx.id, tx.amount, tx.currency, provider_name, fee.amount,
        )
        submitted = replace(intent, currency=currency, customer_email=tx.customer_email)

        try:
            result = await asyncio.wait_for(
                with_retry(
                    adapter.create_payment,
                    tx.id,
                    submitted,
                    max_retries=self._write_max_retries,
                    base_delay=self._retry_base_delay,
                ),
                timeout=timeout or self._timeout,
            )
        except asyncio.TimeoutError:
            return await self._mark_ambiguous(tx.id, f"{provider_name} did not respond in time")
        except asyncio.CancelledError:
            await asyncio.shield(
                self._mark_ambiguous(tx.id, f"{provider_name} call cancelled")
            )
            raise
        except ProviderError as e:
            if _is_definite(e):
                return await self._mark_failed(tx.id, e.message, e.code, ChangeSource.ADAPTER)
            return await self._mark_ambiguous(tx.id, e.message)

        return await self._apply_result(tx.id, result, ChangeSource.ADAPTER)

    async def _apply_result(
        self, transaction_id: str, result: AdapterResult, source: ChangeSource
    ) -> Transaction:
        async with self.ledger.lock(transaction_id):
            if result.status is TransactionStatus.PENDING:
                return await self.ledger.attach_provider_details(
                    transaction_id, result.provider_payment_id, result.redirect_url
                )
            try:
                return await self.ledger.update_status(
                    transaction_id,
                    result.status,
                    source=source,
                    raw=result.raw,
                    error=result.error,
                    provider_payment_id=result.provider_payment_id,
                    redirect_url=result.redirect_url,
                )
            except InvalidTransitionError:
                # Another path reached a terminal state first
                return await self.ledger.get(transaction_id)

    async def _mark_failed(
        self, transaction_id: str, error: str, error_code: str, source: ChangeSource
    ) -> Transaction:
        async with self.ledger.lock(transaction_id):
            try:
                return await self.ledger.update_status(
                    transaction_id,
                    TransactionStatus.FAILED,
                    source=source,
                    error=error,
                    error_code=error_code,
                )
            except InvalidTransitionError:
                return await self.ledger.get(transaction_id)

    async def _mark_ambiguous(self, transaction_id: str, error: str) -> Transaction:
        logger.warning("Ambiguous outcome for txn=%s: %s", transaction_id, error)
        return await self._mark_failed(
            transaction_id, error, AmbiguousOutcomeError.code, ChangeSource.TIMEOUT
        )

    async def verify_payment(
        self, transaction_id: str, *, timeout: Optional[float] = None
    ) -> Transaction:
        """
        Reconcile a transaction with the provider's authoritative status.

        Raises:
            TransactionNotFoundError: Unknown transaction id.
            AmbiguousOutcomeError: The provider did not answer in time.
            ProviderError: The provider could not be queried.
        """
        tx = await self.ledger.get(transaction_id)
        adapter = self.adapter(tx.provider)

        try:
            result = await asyncio.wait_for(
                with_retry(
                    adapter.get_payment_status,
                    tx,
                    max_retries=self._read_max_retries,
                    base_delay=self._retry_base_delay,
                ),
                timeout=timeout or self._timeout,
            )
        except asyncio.TimeoutError:
            raise AmbiguousOutcomeError(
                f"{tx.provider} did not respond in time for {transaction_id}"
            ) from None
        except ProviderError as e:
            if e.status_code == 404 and tx.status is TransactionStatus.FAILED:
                # The charge never reached the provider
                logger.info("txn=%s unknown to %s, stays failed", tx.id, tx.provider)
                return tx
            raise

        return await self._apply_result(tx.id, result, ChangeSource.VERIFY)

    # ─── Refunds ───────────────────────────────────────────────────────

    async def process_refund(
        self, intent: RefundIntent, *, timeout: Optional[float] = None
    ) -> RefundRecord:
        """
        Refund all or part of a completed payment.

        ``intent.amount=None`` refunds the remaining balance. Pending
        refunds count against the balance, so concurrent partial refunds
        can never overdraw the original amount.

        Returns:
            The refund record. Provider declines come back as ``failed``.

        Raises:
            TransactionNotFoundError: Unknown transaction id.
            RefundNotAllowedError: Parent is not completed.
            InsufficientRefundableBalanceError: Nothing (or not enough) left.
        """
        async with self.ledger.lock(intent.transaction_id):
            tx = await self.ledger.get(intent.transaction_id)
            validate_refund(intent, tx.currency)

            if intent.refund_id:
                existing = await self.ledger.get_refund(intent.refund_id)
                if existing is not None:
                    return existing

            if tx.status is TransactionStatus.REFUNDED:
                raise InsufficientRefundableBalanceError(
                    f"Transaction {tx.id} is already fully refunded"
                )
            if tx.status is not TransactionStatus.COMPLETED:
                raise RefundNotAllowedError(
                    f"Transaction {tx.id} is {tx.status.value}, only completed payments can be refunded"
                )

            balance = await self.ledger.refundable_balance(tx.id)
            amount = intent.amount if intent.amount is not None else balance
            if balance <= 0 or amount > balance:
                raise InsufficientRefundableBalanceError(
                    f"Refund of {amount} {tx.currency} exceeds refundable balance of {balance}"
                )
            validate_amount(amount, tx.currency)

            refund = await self.ledger.add_refund(RefundRecord(
                id=intent.refund_id or new_refund_id(),
                transaction_id=tx.id,
                provider=tx.provider,
                amount=amount,
                currency=tx.currency,
                reason=intent.reason,
            ))

        adapter = self.adapter(tx.provider)
        retries = self._write_max_retries if adapter.idempotent_refunds else 0
        try:
            result = await asyncio.wait_for(
                with_retry(
                    adapter.create_refund,
                    tx,
                    refund,
                    max_retries=retries,
                    base_delay=self._retry_base_delay,
                ),
                timeout=timeout or self._timeout,
            )
        except asyncio.TimeoutError:
            return await self._refund_ambiguous(refund, f"{tx.provider} did not respond in time")
        except ProviderError as e:
            if not _is_definite(e):
                return await self._refund_ambiguous(refund, e.message)
            async with self.ledger.lock(tx.id):
                return await self.ledger.settle_refund(
                    refund.id, RefundStatus.FAILED, error=e.message
                )

        async with self.ledger.lock(tx.id):
            try:
                settled = await self.ledger.settle_refund(
                    refund.id,
                    result.status,
                    provider_refund_id=result.provider_refund_id,
                    error=result.error,
                    raw=result.raw,
                )
            except InvalidTransitionError:
                # Settled by a webhook in the meantime
                settled = await self.ledger.get_refund(refund.id) or refund

        logger.info(
            "Refund %s of %s %s on txn=%s: %s",
            settled.id, settled.amount, settled.currency, tx.id, settled.status.value,
        )
        return settled

    async def _refund_ambiguous(self, refund: RefundRecord, error: str) -> RefundRecord:
        # Stays pending (and reserved) until a webhook settles it
        logger.warning("Ambiguous outcome for refund=%s: %s", refund.id, error)
        await self.ledger.audit.record("refund_ambiguous", refund.transaction_id, {
            "refund_id": refund.id,
            "error": error,
        })
        return await self.ledger.get_refund(refund.id) or refund

    # ─── Webhooks ──────────────────────────────────────────────────────

    async def handle_webhook(self, provider: str, raw_body: bytes, signature: str) -> WebhookEvent:
        return await self._webhooks.ingest(provider, raw_body, signature)

    # ─── Queries ───────────────────────────────────────────────────────

    async def get_transaction(self, transaction_id: str) -> Transaction:
        return await self.ledger.get(transaction_id)

    async def get_transaction_history(self, limit: int = 50) -> list[Transaction]:
        """Most recent transactions first."""
        return await self.ledger.list_recent(limit)

    async def get_customer_transactions(self, email: str, limit: int = 50) -> list[Transaction]:
        return await self.ledger.list_by_customer(email.strip().lower(), limit)

    async def get_transaction_trail(self, transaction_id: str) -> list[StatusChange]:
        """Every status change of a transaction, oldest first."""
        return await self.ledger.history(transaction_id)

    async def get_refunds(self, transaction_id: str) -> list[RefundRecord]:
        await self.ledger.get(transaction_id)
        return await self.ledger.list_refunds(transaction_id)

    def get_providers(self) -> list[ProviderConfig]:
        """Configured providers in routing priority order."""
        return [c for c in self._configs if c.active]

    def get_supported_currencies(self) -> list[str]:
        return sorted({cur for c in self.get_providers() for cur in c.supported_currencies})

    def get_supported_countries(self) -> list[str]:
        return sorted({cty for c in self.get_providers() for cty in c.supported_countries})

    def subscribe(self, listener: Listener) -> None:
        """Call ``listener(transaction, change)`` after every status change."""
        self.ledger.subscribe(listener)

    async def aclose(self) -> None:
        await self.ledger.audit.drain()
        for adapter in self._providers.values():
            await adapter.aclose()


def build_providers(settings: Settings, configs: Iterable[ProviderConfig]) -> dict[str, PaymentProvider]:
    """Real HTTP adapters, or in-process mocks when ``use_mock_providers`` is set."""
    providers: dict[str, PaymentProvider] = {}
    for config in configs:
        if settings.use_mock_providers:
            providers[config.name] = MockPaymentProvider(
                name=config.name,
                latency_ms=settings.mock_latency_ms,
                supported_currencies=set(config.supported_currencies),
            )
        elif config.name == "paypal":
            providers[config.name] = PayPalAdapter(
                config,
                client_id=settings.paypal_client_id,
                client_secret=settings.paypal_client_secret,
                webhook_secret=settings.paypal_webhook_secret,
                base_url=settings.paypal_base_url,
                timeout=settings.provider_timeout_seconds,
            )
        elif config.name == "paystack":
            providers[config.name] = PaystackAdapter(
                config,
                secret_key=settings.paystack_secret_key,
                base_url=settings.paystack_base_url,
                timeout=settings.provider_timeout_seconds,
            )
        else:
            logger.warning("No adapter for provider %s, skipping", config.name)
    return providers


def build_gateway(
    settings: Settings,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> PaymentGateway:
    """Wire a gateway from settings."""
    by_name = {c.name: c for c in DEFAULT_PROVIDERS}
    configs = [by_name[name] for name in settings.provider_priority if name in by_name]

    if settings.ledger_backend == "memory":
        ledger = TransactionLedger(InMemoryLedgerStore(), LoggingAuditSink())
    else:
        if session_factory is None:
            raise ValueError("The sql ledger backend needs a session factory")
        ledger = TransactionLedger(SqlLedgerStore(session_factory), SqlAuditSink(session_factory))

    return PaymentGateway(
        ledger,
        build_providers(settings, configs),
        configs,
        default_provider=settings.default_provider,
        max_amount=settings.max_payment_amount,
        timeout=settings.provider_timeout_seconds,
        read_max_retries=settings.read_max_retries,
        write_max_retries=settings.write_max_retries,
        retry_base_delay=settings.retry_base_delay,
    )

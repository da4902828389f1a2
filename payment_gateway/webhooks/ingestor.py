"""
Webhook ingestion.

Per delivery:

    received → verifying → verified | rejected
             → deduped | applying → applied

  1. Signature check on the raw body, before any parsing. A failure is a
     security event: audited, logged on the security logger, and raised.
  2. Normalization by the provider's adapter.
  3. Dedup on (provider, provider event id). Providers redeliver on
     timeout, so a duplicate is accepted but changes nothing.
  4. Application through the ledger's single status-transition path, under
     the transaction's lock.
"""

import hashlib
import logging
from typing import Mapping, Optional

from payment_gateway.errors import (
    InvalidTransitionError,
    ProviderError,
    SignatureVerificationError,
    UnknownProviderError,
    ValidationError,
)
from payment_gateway.ledger.ledger import TransactionLedger
from payment_gateway.models.domain import RefundRecord, WebhookEvent
from payment_gateway.models.enums import ChangeSource, RefundStatus, WebhookState
from payment_gateway.providers.base import NormalizedWebhook, PaymentProvider

logger = logging.getLogger("payment_gateway.webhooks")
security_logger = logging.getLogger("payment_gateway.security")


class WebhookIngestor:
    def __init__(self, ledger: TransactionLedger, providers: Mapping[str, PaymentProvider]):
        self._ledger = ledger
        self._providers = providers

    async def ingest(self, provider: str, raw_body: bytes, signature: str) -> WebhookEvent:
        """
        Verify, dedupe and apply one webhook delivery.

        Returns:
            The recorded event; ``state`` is ``applied`` or ``deduped``.

        Raises:
            UnknownProviderError: No adapter for ``provider``.
            SignatureVerificationError: Missing or invalid signature.
            ValidationError: Signed body that cannot be interpreted.
        """
        adapter = self._providers.get(provider)
        if adapter is None:
            raise UnknownProviderError(provider)

        event = WebhookEvent(
            provider=provider,
            payload=raw_body.decode("utf-8", errors="replace"),
            signature=signature or "",
        )

        event.state = WebhookState.VERIFYING
        if not adapter.verify_webhook_signature(raw_body, signature or ""):
            event.state = WebhookState.REJECTED
            security_logger.warning(
                "SECURITY | rejected %s webhook: %s signature (%d bytes)",
                provider,
                "invalid" if signature else "missing",
                len(raw_body),
            )
            await self._ledger.audit.record("webhook_rejected", None, {
                "provider": provider,
                "signature_present": bool(signature),
                "body_sha256": hashlib.sha256(raw_body).hexdigest(),
            })
            raise SignatureVerificationError(
                f"Invalid webhook signature for {provider}", provider=provider
            )
        event.verified = True
        event.state = WebhookState.VERIFIED

        try:
            normalized = adapter.normalize_webhook_payload(raw_body)
        except ProviderError as e:
            raise ValidationError(str(e)) from e
        if not normalized.event_id:
            raise ValidationError(f"{provider} webhook has no event id")

        event.provider_event_id = normalized.event_id
        event.event_type = normalized.event_type
        event.transaction_id = normalized.transaction_id

        if not await self._ledger.record_webhook(event):
            existing = await self._ledger.get_webhook(provider, normalized.event_id)
            if existing is not None and existing.processed:
                logger.info("Duplicate %s webhook %s ignored", provider, normalized.event_id)
                existing.state = WebhookState.DEDUPED
                return existing
            # An earlier delivery was recorded but never finished applying
            logger.warning("Re-applying unfinished %s webhook %s", provider, normalized.event_id)

        event.state = WebhookState.APPLYING
        await self._ledger.save_webhook(event)

        if normalized.provider_refund_id or normalized.refund_status is not None:
            event.outcome = await self._apply_refund(provider, normalized)
        else:
            event.outcome = await self._apply_payment(provider, normalized)

        event.state = WebhookState.APPLIED
        event.processed = True
        await self._ledger.save_webhook(event)
        logger.info(
            "Applied %s webhook %s (%s) to txn=%s: %s",
            provider, event.provider_event_id, event.event_type,
            event.transaction_id or "-", event.outcome,
        )
        return event

    async def _apply_payment(self, provider: str, normalized: NormalizedWebhook) -> str:
        if normalized.status is None or not normalized.transaction_id:
            return "ignored"

        async with self._ledger.lock(normalized.transaction_id):
            tx = await self._ledger.find(normalized.transaction_id)
            if tx is None:
                logger.warning(
                    "%s webhook %s references unknown transaction %s",
                    provider, normalized.event_id, normalized.transaction_id,
                )
                return "ignored"
            if tx.provider != provider:
                security_logger.warning(
                    "SECURITY | %s webhook %s targets txn=%s owned by %s",
                    provider, normalized.event_id, tx.id, tx.provider,
                )
                await self._ledger.audit.record("webhook_provider_mismatch", tx.id, {
                    "provider": provider,
                    "owner": tx.provider,
                    "event_id": normalized.event_id,
                })
                return "ignored"

            before = tx.status
            try:
                updated = await self._ledger.update_status(
                    tx.id,
                    normalized.status,
                    source=ChangeSource.WEBHOOK,
                    raw=normalized.raw,
                    error=normalized.error,
                    provider_payment_id=normalized.provider_payment_id,
                )
            except InvalidTransitionError:
                return "conflict"
            return "applied" if updated.status is not before else "noop"

    async def _find_refund(
        self, provider: str, normalized: NormalizedWebhook
    ) -> Optional[RefundRecord]:
        """
        Match a refund event to our refund record.

        By provider refund id first. A refund whose provider call timed out
        never learned that id, so fall back to our own refund id when the
        provider echoes it, then to the parent's only pending refund that
        has no provider id yet (of the same amount, when the event says).
        """
        if normalized.provider_refund_id:
            refund = await self._ledger.find_refund_by_provider_id(
                provider, normalized.provider_refund_id
            )
            if refund is not None:
                return refund
        if normalized.refund_reference:
            refund = await self._ledger.get_refund(normalized.refund_reference)
            if refund is not None and refund.provider == provider:
                return refund
        if not normalized.transaction_id:
            return None

        candidates = [
            r for r in await self._ledger.list_refunds(normalized.transaction_id)
            if r.provider == provider
            and r.status is RefundStatus.PENDING
            and not r.provider_refund_id
            and (normalized.refund_amount is None or r.amount == normalized.refund_amount)
        ]
        if len(candidates) > 1:
            logger.warning(
                "%s webhook %s matches %d unconfirmed refunds on txn=%s, not applying",
                provider, normalized.event_id, len(candidates), normalized.transaction_id,
            )
            return None
        return candidates[0] if candidates else None

    async def _apply_refund(self, provider: str, normalized: NormalizedWebhook) -> str:
        refund = await self._find_refund(provider, normalized)
        if refund is None or normalized.refund_status is None:
            logger.warning(
                "%s webhook %s references unknown refund %s",
                provider, normalized.event_id, normalized.provider_refund_id,
            )
            return "ignored"

        async with self._ledger.lock(refund.transaction_id):
            current = await self._ledger.get_refund(refund.id) or refund
            if normalized.refund_status is RefundStatus.PENDING:
                if (
                    current.status is RefundStatus.PENDING
                    and normalized.provider_refund_id
                    and current.provider_refund_id != normalized.provider_refund_id
                ):
                    await self._ledger.settle_refund(
                        current.id,
                        RefundStatus.PENDING,
                        source=ChangeSource.WEBHOOK,
                        provider_refund_id=normalized.provider_refund_id,
                    )
                return "noop"
            try:
                settled = await self._ledger.settle_refund(
                    current.id,
                    normalized.refund_status,
                    source=ChangeSource.WEBHOOK,
                    provider_refund_id=normalized.provider_refund_id,
                    raw=normalized.raw,
                    error=normalized.error,
                )
            except InvalidTransitionError:
                return "conflict"
            return "applied" if settled.status is not current.status else "noop"

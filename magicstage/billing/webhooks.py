"""
Stripe payment webhook processing.

Handles Stripe webhook events for credit purchases:
- payment_intent.succeeded: grant the purchased credits (exactly once)
- payment_intent.payment_failed: record a rejected payment event

Every other event type is acknowledged and ignored. Redelivered events are
reported as duplicates; the payment_events primary key on the Stripe event
id makes redelivery a no-op even when two deliveries race.
"""

import json
import logging
from typing import Any

import stripe

from magicstage.config import StripeConfig
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.models.ledger import GrantOutcome
from magicstage.models.payment import (
    PaymentEnvelope,
    PaymentEvent,
    PaymentEventStatus,
    WebhookOutcome,
    WebhookResult,
)
from magicstage.observability.metrics import track_webhook_event, track_webhook_signature_failure
from magicstage.storage.database import LedgerDatabase, UnitOfWork
from magicstage.storage.payments import PaymentEventRepository

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class WebhookError(Exception):
    """Base exception for webhook processing errors."""

    pass


class InvalidSignatureError(WebhookError):
    """Signature missing, malformed, expired or wrong. No side effects."""

    pass


class WebhookPayloadError(WebhookError):
    """Payload is not a well-formed Stripe event."""

    pass


class WebhookNotConfiguredError(WebhookError):
    """No webhook secret configured, so nothing can be verified."""

    pass


class PaymentWebhookProcessor:
    """
    Verify and apply Stripe payment events.

    Store errors (StoreUnavailableError) propagate so the endpoint answers
    with a retryable status and Stripe redelivers; redelivery is safe because
    processing is idempotent.
    """

    def __init__(
        self,
        config: StripeConfig,
        db: LedgerDatabase,
        ledger: CreditLedger,
        payments: PaymentEventRepository,
    ):
        """
        Initialize webhook processor.

        Args:
            config: Stripe configuration (webhook secret, signature tolerance)
            db: Ledger database
            ledger: Credit ledger (grants)
            payments: Payment event repository
        """
        self.config = config
        self.db = db
        self.ledger = ledger
        self.payments = payments

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """
        Verify the Stripe-Signature header and parse the event.

        Returns:
            dict: Parsed event

        Raises:
            WebhookNotConfiguredError: If no webhook secret is configured
            InvalidSignatureError: If verification fails
            WebhookPayloadError: If the body is not a JSON object
        """
        if not self.config.webhook_secret:
            raise WebhookNotConfiguredError("Webhook secret not configured")

        if not signature:
            track_webhook_signature_failure()
            raise InvalidSignatureError("Missing Stripe-Signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as e:
            raise WebhookPayloadError("Payload is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                body,
                signature,
                self.config.webhook_secret,
                tolerance=self.config.signature_tolerance_seconds,
            )
        except stripe.SignatureVerificationError as e:
            track_webhook_signature_failure()
            logger.warning("Webhook signature verification failed", extra={"reason": str(e)})
            raise InvalidSignatureError("Invalid signature") from e

        try:
            event = json.loads(body)
        except json.JSONDecodeError as e:
            raise WebhookPayloadError("Invalid payload") from e

        if not isinstance(event, dict):
            raise WebhookPayloadError("Invalid payload")
        return event

    async def handle_event(self, payload: bytes, signature: str | None) -> WebhookResult:
        """Verify then process one webhook delivery."""
        event = self.verify(payload, signature)
        return await self.process_event(event)

    async def process_event(self, event: dict[str, Any]) -> WebhookResult:
        """
        Route a verified event to its handler.

        Raises:
            WebhookPayloadError: If the event lacks an id or type, or is not shaped like an event
            StoreUnavailableError: If the ledger store is unavailable
        """
        try:
            envelope = PaymentEnvelope.from_stripe_event(event)
        except ValueError as e:
            raise WebhookPayloadError(f"Malformed event: {e}") from e

        logger.info(
            "Processing Stripe webhook event",
            extra={"event_type": envelope.type, "event_id": envelope.event_id},
        )

        handlers = {
            PAYMENT_SUCCEEDED: self._handle_payment_succeeded,
            PAYMENT_FAILED: self._handle_payment_failed,
        }

        handler = handlers.get(envelope.type)
        if handler:
            result = await handler(envelope)
        else:
            logger.info("Unhandled webhook event type", extra={"event_type": envelope.type})
            result = self._result(envelope, WebhookOutcome.IGNORED, "Event type not handled")

        track_webhook_event(envelope.type, result.outcome.value)
        logger.info(
            "Webhook event processed",
            extra={
                "event_type": envelope.type,
                "event_id": envelope.event_id,
                "outcome": result.outcome.value,
                "organization_id": result.organization_id,
            },
        )
        return result

    async def _handle_payment_succeeded(self, envelope: PaymentEnvelope) -> WebhookResult:
        if not envelope.organization_id:
            logger.warning(
                "Payment event without organizationId metadata",
                extra={"event_id": envelope.event_id, "payment_id": envelope.payment_id},
            )
            return self._result(envelope, WebhookOutcome.IGNORED, "Missing organizationId metadata")

        if envelope.credits is None or envelope.credits <= 0:
            return await self.db.run_in_transaction(
                self._record_rejected_in, envelope, "invalid_credits"
            )

        return await self.db.run_in_transaction(self._apply_grant_in, envelope)

    def _apply_grant_in(self, conn: UnitOfWork, envelope: PaymentEnvelope) -> WebhookResult:
        if self.payments.get_in(conn, envelope.event_id) is not None:
            return self._result(envelope, WebhookOutcome.DUPLICATE, "Event already processed")

        if self.ledger.get_account_in(conn, envelope.organization_id) is None:
            return self._record_rejected_in(conn, envelope, "unknown_organization")

        grant = self.ledger.grant_in(
            conn,
            envelope.organization_id,
            envelope.credits,
            envelope.event_id,
            payment_id=envelope.payment_id,
            event_type=envelope.type,
            amount_cents=envelope.amount_cents,
            currency=envelope.currency,
        )

        if grant.outcome == GrantOutcome.ALREADY_APPLIED:
            return self._result(envelope, WebhookOutcome.DUPLICATE, "Payment already credited")

        return self._result(
            envelope,
            WebhookOutcome.APPLIED,
            f"Granted {grant.amount} credits",
            credits_granted=grant.amount,
            balance=grant.balance,
        )

    async def _handle_payment_failed(self, envelope: PaymentEnvelope) -> WebhookResult:
        return await self.db.run_in_transaction(
            self._record_rejected_in, envelope, "payment_failed"
        )

    def _record_rejected_in(
        self, conn: UnitOfWork, envelope: PaymentEnvelope, reason: str
    ) -> WebhookResult:
        """Persist a rejected payment event (no balance change)."""
        if self.payments.get_in(conn, envelope.event_id) is not None:
            return self._result(envelope, WebhookOutcome.DUPLICATE, "Event already processed")

        self.payments.insert_in(
            conn,
            PaymentEvent(
                external_event_id=envelope.event_id,
                organization_id=envelope.organization_id,
                payment_id=envelope.payment_id,
                event_type=envelope.type,
                credits_granted=0,
                amount_cents=envelope.amount_cents,
                currency=envelope.currency,
                status=PaymentEventStatus.REJECTED,
                reason=reason,
            ),
        )
        conn.after_commit(
            lambda: logger.warning(
                "Payment event rejected",
                extra={
                    "event_id": envelope.event_id,
                    "organization_id": envelope.organization_id,
                    "reason": reason,
                },
            )
        )
        return self._result(envelope, WebhookOutcome.REJECTED, reason)

    async def events_for_organization(
        self, organization_id: str, limit: int = 50
    ) -> list[PaymentEvent]:
        """Payment events recorded for an organization, newest first."""
        return await self.payments.list_for_organization(organization_id, limit=limit)

    @staticmethod
    def _result(
        envelope: PaymentEnvelope,
        outcome: WebhookOutcome,
        message: str,
        credits_granted: int = 0,
        balance: int | None = None,
    ) -> WebhookResult:
        return WebhookResult(
            event_id=envelope.event_id,
            event_type=envelope.type,
            outcome=outcome,
            organization_id=envelope.organization_id,
            credits_granted=credits_granted,
            balance=balance,
            message=message,
        )

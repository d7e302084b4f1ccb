"""
Stripe integration for credit purchases.

Creates PaymentIntents for credit packages. The intent metadata
(organizationId, userId, packageId, credits) is what the payment webhook
reads back to grant credits once the payment succeeds.
"""

import asyncio
import logging
from typing import Any

import stripe

from magicstage.billing.pricing import get_credit_package
from magicstage.config import StripeConfig
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.errors import AccountNotFoundError
from magicstage.resilience.circuit_breakers import with_stripe_circuit_breaker

logger = logging.getLogger(__name__)


class StripeError(Exception):
    """Base exception for Stripe-related errors."""

    pass


class StripeNotConfiguredError(StripeError):
    pass


class PaymentError(StripeError):
    """Payment processing error."""

    pass


class UnknownPackageError(StripeError):
    def __init__(self, package_id: str):
        self.package_id = package_id
        super().__init__(f"Invalid credit package: {package_id}")


@with_stripe_circuit_breaker
def _create_payment_intent(**params: Any) -> stripe.PaymentIntent:
    return stripe.PaymentIntent.create(**params)


class StripeService:
    """
    Stripe integration service.

    Stripe's Python client is synchronous, so calls run in a worker thread
    behind the Stripe circuit breaker.
    """

    def __init__(self, config: StripeConfig, ledger: CreditLedger):
        """
        Initialize Stripe service.

        Args:
            config: Stripe configuration
            ledger: Credit ledger (to check the buying organization exists)
        """
        self.config = config
        self.ledger = ledger

        if config.api_key:
            stripe.api_key = config.api_key
            logger.info("Stripe service initialized")
        else:
            logger.warning("Stripe API key not configured - credit purchases disabled")

    @property
    def is_enabled(self) -> bool:
        """Check if Stripe is properly configured."""
        return self.config.is_configured

    async def create_credit_purchase_intent(
        self,
        organization_id: str,
        package_id: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a PaymentIntent for a credit package.

        Args:
            organization_id: Organization the credits are for
            package_id: Credit package ID (credits-10, credits-25, ...)
            user_id: Purchasing user, recorded in metadata

        Returns:
            dict: client_secret, payment_intent_id, amount, currency, credits

        Raises:
            UnknownPackageError: If the package does not exist
            AccountNotFoundError: If the organization has no credit account
            StripeNotConfiguredError: If no Stripe API key is configured
            PaymentError: If Stripe rejects the request
            StripeCircuitBreakerError: If Stripe is failing and the breaker is open
        """
        package = get_credit_package(package_id)
        if package is None:
            raise UnknownPackageError(package_id)

        if not self.is_enabled:
            raise StripeNotConfiguredError("Stripe not configured")

        if await self.ledger.get_account(organization_id) is None:
            raise AccountNotFoundError(organization_id)

        metadata = {
            "organizationId": organization_id,
            "packageId": package.id,
            "credits": str(package.credits),
        }
        if user_id:
            metadata["userId"] = user_id

        try:
            intent = await asyncio.to_thread(
                _create_payment_intent,
                amount=package.amount_cents,
                currency=self.config.currency,
                metadata=metadata,
                description=f"{package.credits} AI Staging Credits - Magic Staging",
            )
        except stripe.StripeError as e:
            logger.error(
                "Failed to create payment intent",
                extra={"organization_id": organization_id, "package_id": package_id, "error": str(e)},
            )
            raise PaymentError(f"Failed to create payment intent: {e}") from e

        logger.info(
            "Created payment intent",
            extra={
                "organization_id": organization_id,
                "package_id": package.id,
                "payment_intent_id": intent.id,
                "amount_cents": intent.amount,
            },
        )

        return {
            "client_secret": intent.client_secret,
            "payment_intent_id": intent.id,
            "amount": intent.amount,
            "currency": intent.currency,
            "credits": package.credits,
        }

"""
Billing: credit packages, Stripe credit purchases and payment webhooks.

Stripe integration for:
- PaymentIntents for credit packages
- Webhook handling (payment_intent.succeeded / payment_intent.payment_failed)
"""

from magicstage.billing.pricing import CREDIT_PACKAGES, CreditPackage, get_credit_package
from magicstage.billing.stripe_service import StripeService
from magicstage.billing.webhooks import PaymentWebhookProcessor

__all__ = [
    "CREDIT_PACKAGES",
    "CreditPackage",
    "PaymentWebhookProcessor",
    "StripeService",
    "get_credit_package",
]

"""
Magic Staging - prepaid credits for AI virtual staging.

Sells AI staging operations paid for with prepaid credits and keeps the
credit ledger correct while staging requests, payment webhooks and provider
failures all change it at the same time.

Key Features:
    - Credit ledger with reserve / commit / refund / grant
    - Idempotent Stripe payment webhook processing
    - Staging job orchestration with refund on any failure
    - Append-only usage audit trail with reconciliation

Example:
    >>> from magicstage import get_settings
    >>> settings = get_settings()
    >>> print(settings.staging.credits_per_job)
"""

from magicstage.config import get_settings

__version__ = "0.1.0"

__all__ = ["get_settings"]

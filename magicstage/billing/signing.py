"""
Stripe-compatible webhook signing.

Produces the Stripe-Signature header ("t=<timestamp>,v1=<hex hmac>") over
"<timestamp>.<payload>" with HMAC-SHA256, exactly as Stripe signs webhook
deliveries. Verification is done by the stripe library in the webhook
processor; this module is the sending side, used by tests and by
scripts that replay events against a running service.
"""

import hashlib
import hmac
import secrets
import time


class StripeSignatureSigner:
    """
    Signs webhook payloads the way Stripe does.

    Usage:
        signer = StripeSignatureSigner(settings.stripe.webhook_secret)
        headers = signer.create_headers(payload)
        httpx.post(url, content=payload, headers=headers)
    """

    SIGNATURE_SCHEME = "v1"

    def __init__(self, secret: str):
        """
        Args:
            secret: Webhook endpoint secret (whsec_...)
        """
        if not secret or len(secret) < 32:
            raise ValueError("Webhook secret must be at least 32 characters for security")

        self.secret = secret.encode("utf-8")

    def compute_signature(self, payload: str, timestamp: int) -> str:
        signed_payload = f"{timestamp}.{payload}"
        return hmac.new(self.secret, signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def sign_payload(self, payload: str, timestamp: int | None = None) -> str:
        """
        Build a Stripe-Signature header value.

        Args:
            payload: Raw JSON body (exact bytes the receiver will see, as str)
            timestamp: Unix timestamp (None = use current time)

        Returns:
            str: "t=1700000000,v1=a1b2c3..."
        """
        if timestamp is None:
            timestamp = int(time.time())

        signature = self.compute_signature(payload, timestamp)
        return f"t={timestamp},{self.SIGNATURE_SCHEME}={signature}"

    def create_headers(self, payload: str, timestamp: int | None = None) -> dict[str, str]:
        return {
            "Stripe-Signature": self.sign_payload(payload, timestamp),
            "Content-Type": "application/json",
        }


def generate_webhook_secret() -> str:
    """Random secret in Stripe's format (whsec_ + 64 hex chars)."""
    return f"whsec_{secrets.token_hex(32)}"

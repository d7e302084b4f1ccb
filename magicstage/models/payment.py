"""
Payment event models.

PaymentEvent is the persisted record of an inbound payment-provider event.
Its external_event_id is unique, which is what makes webhook redelivery safe.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class PaymentEventStatus(str, Enum):
    """Processing status of an inbound payment event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"  # reported to the caller, never stored as a new row
    REJECTED = "rejected"


class PaymentEvent(BaseModel):
    """Persisted payment event (one row per external event id)."""

    external_event_id: str
    organization_id: str | None = Field(default=None)
    payment_id: str | None = Field(default=None, description="Payment intent ID (pi_...)")
    event_type: str
    credits_granted: int = Field(default=0, ge=0)
    amount_cents: int = Field(default=0, ge=0)
    currency: str | None = Field(default=None)
    status: PaymentEventStatus
    reason: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class PaymentEnvelope(BaseModel):
    """
    Provider-neutral view of a verified payment event.

    Built from Stripe's payment_intent.* events:
        {id, type, data: {object: {id, amount, currency, metadata: {...}}}}
    """

    event_id: str = Field(..., min_length=1)
    type: str
    payment_id: str | None = Field(default=None)
    amount_cents: int = Field(default=0, ge=0)
    currency: str | None = Field(default=None)
    organization_id: str | None = Field(default=None)
    credits: int | None = Field(default=None)
    package_id: str | None = Field(default=None)
    user_id: str | None = Field(default=None)

    @classmethod
    def from_stripe_event(cls, event: dict[str, Any]) -> "PaymentEnvelope":
        """
        Normalize a Stripe event dict.

        Raises:
            ValueError: If the envelope lacks an event id or type, or its
                data, object or metadata is not a JSON object
        """
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValueError("Event is missing id or type")

        data = _json_object(event.get("data"), "data")
        obj = _json_object(data.get("object"), "data.object")
        metadata = _json_object(obj.get("metadata"), "data.object.metadata")

        return cls(
            event_id=event_id,
            type=event_type,
            payment_id=obj.get("id"),
            amount_cents=_non_negative_int(obj.get("amount")),
            currency=(obj.get("currency") or None) and str(obj["currency"]).lower(),
            organization_id=metadata.get("organizationId") or None,
            credits=_parse_credits(metadata.get("credits")),
            package_id=metadata.get("packageId") or None,
            user_id=metadata.get("userId") or None,
        )


def _json_object(value: Any, path: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"Event {path} must be an object, got {type(value).__name__}")
    return value


def _non_negative_int(value: Any) -> int:
    try:
        return max(0, int(value))
    except (TypeError, ValueError):
        return 0


def _parse_credits(value: Any) -> int | None:
    # Stripe metadata values are always strings
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


class WebhookOutcome(str, Enum):
    """What the webhook processor did with an event."""

    APPLIED = "applied"
    DUPLICATE = "duplicate"
    REJECTED = "rejected"
    IGNORED = "ignored"


class WebhookResult(BaseModel):
    """Result returned to the webhook endpoint (always a 2xx for the provider)."""

    event_id: str
    event_type: str
    outcome: WebhookOutcome
    organization_id: str | None = Field(default=None)
    credits_granted: int = Field(default=0)
    balance: int | None = Field(default=None)
    message: str = Field(default="")

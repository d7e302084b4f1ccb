"""
Payment webhook endpoint.

Stripe treats any 2xx as delivered, so applied, duplicate, rejected and
ignored events all answer 200. Bad signatures and malformed payloads answer
400 (Stripe gives up); store outages answer 503 (Stripe redelivers, which is
safe because processing is idempotent).
"""

from fastapi import APIRouter, Depends, Header, Request

from magicstage.billing.webhooks import PaymentWebhookProcessor
from magicstage.models.payment import WebhookOutcome
from magicstage.models.staging import CamelModel
from magicstage.routers.dependencies import get_webhook_processor

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


class WebhookResponse(CamelModel):
    received: bool = True
    event_id: str
    outcome: WebhookOutcome
    credits_granted: int = 0
    message: str = ""


@router.post(
    "/payment",
    response_model=WebhookResponse,
    responses={
        400: {"description": "Invalid signature or payload"},
        503: {"description": "Webhooks not configured or ledger store unavailable"},
    },
)
@router.post("/stripe", response_model=WebhookResponse, include_in_schema=False)
async def receive_payment_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    processor: PaymentWebhookProcessor = Depends(get_webhook_processor),
) -> WebhookResponse:
    """Verify and apply one Stripe event delivery."""
    payload = await request.body()
    result = await processor.handle_event(payload, stripe_signature)

    return WebhookResponse(
        event_id=result.event_id,
        outcome=result.outcome,
        credits_granted=result.credits_granted,
        message=result.message,
    )

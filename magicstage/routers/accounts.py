"""
Organization credit, history and purchase endpoints.

Read models over the ledger (balance, recent entries, jobs, payment events)
plus credit package listing and Stripe PaymentIntent creation.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status
from pydantic import Field, field_validator

from magicstage.billing.pricing import CREDIT_PACKAGES, CreditPackage
from magicstage.billing.stripe_service import StripeService
from magicstage.billing.webhooks import PaymentWebhookProcessor
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.errors import AccountNotFoundError
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.models.ledger import LedgerEntryKind, validate_organization_id
from magicstage.models.payment import PaymentEventStatus
from magicstage.models.staging import CamelModel
from magicstage.routers.dependencies import (
    get_credit_ledger,
    get_orchestrator,
    get_stripe_service,
    get_usage_recorder,
    get_webhook_processor,
    valid_organization_id,
)
from magicstage.routers.staging import StagingJobResponse
from magicstage.staging.orchestrator import StagingJobOrchestrator

router = APIRouter(tags=["Credits"])


class LedgerEntryResponse(CamelModel):
    entry_id: int
    kind: LedgerEntryKind
    amount: int
    balance_after: int
    reservation_id: str | None = None
    related_job_id: str | None = None
    related_payment_id: str | None = None
    created_at: datetime


class CreditsResponse(CamelModel):
    organization_id: str
    balance: int
    recent_entries: list[LedgerEntryResponse]


class PaymentEventResponse(CamelModel):
    external_event_id: str
    payment_id: str | None = None
    event_type: str
    status: PaymentEventStatus
    credits_granted: int
    amount_cents: int | None = None
    currency: str | None = None
    reason: str | None = None
    created_at: datetime


class CreditPackageResponse(CamelModel):
    id: str
    credits: int
    price_per_credit: float
    total_price: float
    savings: float
    is_popular: bool
    amount_cents: int

    @classmethod
    def from_package(cls, package: CreditPackage) -> "CreditPackageResponse":
        return cls(
            id=package.id,
            credits=package.credits,
            price_per_credit=float(package.price_per_credit),
            total_price=float(package.total_price),
            savings=float(package.savings),
            is_popular=package.is_popular,
            amount_cents=package.amount_cents,
        )


class PaymentIntentRequest(CamelModel):
    organization_id: str
    package_id: str = Field(..., min_length=1, max_length=64)
    user_id: str | None = Field(default=None, max_length=128)

    @field_validator("organization_id")
    @classmethod
    def validate_organization(cls, v: str) -> str:
        return validate_organization_id(v)


class PaymentIntentResponse(CamelModel):
    client_secret: str
    payment_intent_id: str
    amount: int
    currency: str
    credits: int


@router.get("/organizations/{organization_id}/credits", response_model=CreditsResponse)
async def get_credits(
    organization_id: str = Depends(valid_organization_id),
    limit: int = Query(default=20, ge=1, le=200),
    ledger: CreditLedger = Depends(get_credit_ledger),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> CreditsResponse:
    """Current balance and the most recent ledger entries."""
    account = await ledger.get_account(organization_id)
    if account is None:
        raise AccountNotFoundError(organization_id)

    entries = await recorder.list_entries(organization_id, limit=limit, newest_first=True)
    return CreditsResponse(
        organization_id=organization_id,
        balance=account.balance,
        recent_entries=[
            LedgerEntryResponse.model_validate(entry.model_dump()) for entry in entries
        ],
    )


@router.get(
    "/organizations/{organization_id}/staging-jobs",
    response_model=list[StagingJobResponse],
)
async def list_staging_jobs(
    organization_id: str = Depends(valid_organization_id),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    orchestrator: StagingJobOrchestrator = Depends(get_orchestrator),
) -> list[StagingJobResponse]:
    jobs = await orchestrator.list_jobs(organization_id, limit=limit, offset=offset)
    return [StagingJobResponse.from_job(job) for job in jobs]


@router.get(
    "/organizations/{organization_id}/payment-events",
    response_model=list[PaymentEventResponse],
)
async def list_payment_events(
    organization_id: str = Depends(valid_organization_id),
    limit: int = Query(default=50, ge=1, le=200),
    processor: PaymentWebhookProcessor = Depends(get_webhook_processor),
) -> list[PaymentEventResponse]:
    events = await processor.events_for_organization(organization_id, limit=limit)
    return [PaymentEventResponse.model_validate(event.model_dump()) for event in events]


@router.get("/credit-packages", response_model=list[CreditPackageResponse])
async def list_credit_packages() -> list[CreditPackageResponse]:
    return [CreditPackageResponse.from_package(package) for package in CREDIT_PACKAGES]


@router.post(
    "/payments/intents",
    response_model=PaymentIntentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"description": "Unknown credit package"},
        404: {"description": "Organization has no credit account"},
        502: {"description": "Stripe rejected the request"},
        503: {"description": "Stripe not configured or unavailable"},
    },
)
async def create_payment_intent(
    payload: PaymentIntentRequest,
    stripe_service: StripeService = Depends(get_stripe_service),
) -> PaymentIntentResponse:
    """Create a Stripe PaymentIntent for a credit package."""
    intent = await stripe_service.create_credit_purchase_intent(
        payload.organization_id,
        payload.package_id,
        user_id=payload.user_id,
    )
    return PaymentIntentResponse(**intent)

"""
FastAPI dependencies resolving services from the application state.

Every service is created once in the lifespan handler and stored on
app.state; handlers receive them through Depends so tests can swap them
with app.dependency_overrides.
"""

from fastapi import HTTPException, Path, Request, status

from magicstage.billing.stripe_service import StripeService
from magicstage.billing.webhooks import PaymentWebhookProcessor
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.models.ledger import validate_organization_id
from magicstage.observability.logging import set_organization_id
from magicstage.staging.orchestrator import StagingJobOrchestrator


def get_credit_ledger(request: Request) -> CreditLedger:
    return request.app.state.credit_ledger


def get_usage_recorder(request: Request) -> UsageRecorder:
    return request.app.state.usage_recorder


def get_orchestrator(request: Request) -> StagingJobOrchestrator:
    return request.app.state.orchestrator


def get_webhook_processor(request: Request) -> PaymentWebhookProcessor:
    return request.app.state.webhook_processor


def get_stripe_service(request: Request) -> StripeService:
    return request.app.state.stripe_service


def valid_organization_id(organization_id: str = Path(...)) -> str:
    """
    Validate an organization id path parameter and bind it to the log context.

    Raises:
        HTTPException 400: Malformed organization id
    """
    try:
        organization_id = validate_organization_id(organization_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    set_organization_id(organization_id)
    return organization_id

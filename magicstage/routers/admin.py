"""
Operator endpoints (X-Admin-Key).

- Open a credit account for a new organization, with its signup bonus
- Reconcile one or all accounts (balance vs. sum of ledger entries)
- Recover stale staging jobs (fail + refund reservations left in flight)
"""

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, Request, status
from pydantic import Field, field_validator

from magicstage.auth import require_admin_key
from magicstage.config import get_settings
from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.models.ledger import ReconciliationReport, validate_organization_id
from magicstage.models.staging import CamelModel
from magicstage.observability.logging import get_logger
from magicstage.rate_limits import ADMIN_RATE_LIMIT, limiter
from magicstage.routers.dependencies import (
    get_credit_ledger,
    get_orchestrator,
    get_usage_recorder,
    valid_organization_id,
)
from magicstage.staging.orchestrator import StagingJobOrchestrator

logger = get_logger(__name__)

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(require_admin_key)],
)


class OpenAccountRequest(CamelModel):
    organization_id: str
    signup_bonus: int | None = Field(
        default=None, ge=0, le=1000, description="Defaults to STAGING_SIGNUP_BONUS_CREDITS"
    )

    @field_validator("organization_id")
    @classmethod
    def validate_organization(cls, v: str) -> str:
        return validate_organization_id(v)


class AccountResponse(CamelModel):
    organization_id: str
    balance: int
    created_at: datetime


class ReconciliationResponse(CamelModel):
    organization_id: str
    balance: int
    entries_total: int
    entry_count: int
    held_reservations: int
    held_credits: int
    consistent: bool
    drift: int
    checked_at: datetime

    @classmethod
    def from_report(cls, report: ReconciliationReport) -> "ReconciliationResponse":
        return cls(
            organization_id=report.organization_id,
            balance=report.balance,
            entries_total=report.entries_total,
            entry_count=report.entry_count,
            held_reservations=report.held_reservations,
            held_credits=report.held_credits,
            consistent=report.consistent,
            drift=report.drift,
            checked_at=report.checked_at,
        )


class RecoverStaleJobsRequest(CamelModel):
    older_than_minutes: int | None = Field(
        default=None, ge=1, description="Defaults to STAGING_STALE_JOB_MINUTES"
    )


class RecoverStaleJobsResponse(CamelModel):
    recovered: int
    job_ids: list[str]


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(ADMIN_RATE_LIMIT)
async def open_account(
    request: Request,
    payload: OpenAccountRequest,
    ledger: CreditLedger = Depends(get_credit_ledger),
) -> AccountResponse:
    """
    Open a credit account (idempotent).

    The signup bonus is granted only when the account is first created;
    reopening returns the existing account unchanged.
    """
    bonus = payload.signup_bonus
    if bonus is None:
        bonus = get_settings().staging.signup_bonus_credits

    account = await ledger.open_account(payload.organization_id, signup_bonus=bonus)
    return AccountResponse(
        organization_id=account.organization_id,
        balance=account.balance,
        created_at=account.created_at,
    )


@router.get(
    "/accounts/{organization_id}/reconciliation",
    response_model=ReconciliationResponse,
)
async def reconcile_account(
    organization_id: str = Depends(valid_organization_id),
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> ReconciliationResponse:
    report = await recorder.reconcile(organization_id)
    return ReconciliationResponse.from_report(report)


@router.get("/reconciliation", response_model=list[ReconciliationResponse])
async def reconcile_all_accounts(
    recorder: UsageRecorder = Depends(get_usage_recorder),
) -> list[ReconciliationResponse]:
    reports = await recorder.reconcile_all()
    return [ReconciliationResponse.from_report(report) for report in reports]


@router.post("/staging-jobs/recover", response_model=RecoverStaleJobsResponse)
@limiter.limit(ADMIN_RATE_LIMIT)
async def recover_stale_jobs(
    request: Request,
    payload: RecoverStaleJobsRequest | None = None,
    orchestrator: StagingJobOrchestrator = Depends(get_orchestrator),
) -> RecoverStaleJobsResponse:
    """Fail and refund jobs stuck in reserved/processing."""
    older_than = None
    if payload is not None and payload.older_than_minutes is not None:
        older_than = timedelta(minutes=payload.older_than_minutes)

    recovered = await orchestrator.recover_stale_jobs(older_than=older_than)

    logger.info("Stale job recovery requested", recovered=len(recovered))
    return RecoverStaleJobsResponse(
        recovered=len(recovered),
        job_ids=[job.job_id for job in recovered],
    )

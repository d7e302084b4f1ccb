"""
Staging job API endpoints.

POST /staging-jobs reserves a credit and answers 201 as soon as the job is
processing; the provider call and settlement continue in the background.
Clients poll GET /staging-jobs/{job_id} for the result.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import Field

from magicstage.models.staging import (
    CamelModel,
    StagingJob,
    StagingJobStatus,
    StagingPreferences,
    StagingRequest,
    StagingStyle,
)
from magicstage.observability.logging import get_logger, set_organization_id
from magicstage.rate_limits import limiter, staging_rate_limit
from magicstage.routers.dependencies import get_orchestrator
from magicstage.staging.orchestrator import StagingJobOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/staging-jobs", tags=["Staging"])


class StagingJobCreatedResponse(CamelModel):
    job_id: str
    status: StagingJobStatus


class StagingJobResponse(CamelModel):
    """Job status and result (room image reference is not echoed back)."""

    job_id: str
    organization_id: str
    status: StagingJobStatus
    style: StagingStyle
    prompt: str
    preferences: StagingPreferences | None = Field(default=None)
    staged_image_url: str | None = Field(default=None)
    ai_cost_cents: int | None = Field(default=None)
    error_message: str | None = Field(default=None)
    created_at: datetime
    completed_at: datetime | None = Field(default=None)

    @classmethod
    def from_job(cls, job: StagingJob) -> "StagingJobResponse":
        return cls(
            job_id=job.job_id,
            organization_id=job.organization_id,
            status=job.status,
            style=job.style,
            prompt=job.prompt,
            preferences=job.preferences,
            staged_image_url=job.staged_image_url,
            ai_cost_cents=job.ai_cost_cents,
            error_message=job.error_message,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )


@router.post(
    "",
    response_model=StagingJobCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    responses={
        402: {"description": "Insufficient credits"},
        404: {"description": "Organization has no credit account"},
        503: {"description": "Ledger store unavailable"},
    },
)
@limiter.limit(staging_rate_limit)
async def create_staging_job(
    request: Request,
    payload: StagingRequest,
    orchestrator: StagingJobOrchestrator = Depends(get_orchestrator),
) -> StagingJobCreatedResponse:
    """
    Submit a staging job.

    Reserves one credit before anything else happens. With no credit left the
    request is rejected with 402 and nothing is persisted.
    """
    set_organization_id(payload.organization_id)

    job = await orchestrator.submit(payload)
    orchestrator.start(job)

    return StagingJobCreatedResponse(job_id=job.job_id, status=job.status)


@router.get("/{job_id}", response_model=StagingJobResponse)
async def get_staging_job(
    job_id: str,
    orchestrator: StagingJobOrchestrator = Depends(get_orchestrator),
) -> StagingJobResponse:
    job = await orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Staging job not found: {job_id}",
        )
    return StagingJobResponse.from_job(job)

"""
Staging job orchestration.

State machine:
    pending -> reserved -> processing -> completed | failed

1. Validate the request.
2. Reserve the per-job credit cost and insert the job as reserved in one unit
   of work. Insufficient credits roll back the whole unit, so a rejected
   request leaves no job row and no ledger entry.
3. Move the job to processing.
4. Call the AI provider with a deadline. No database lock is held while it runs.
5. Success: store the artifact, then completed + commit in one unit of work.
6. Any failure: failed + error_message + refund in one unit of work.

There are no automatic retries; a retry is a new job with a new reservation.
Finalisation is guarded on the job still being in flight, so a provider
result that arrives after stale-job recovery already failed the job is
discarded instead of double-settling the reservation.
"""

import asyncio
from datetime import UTC, datetime, timedelta

from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.models.staging import (
    StagingJob,
    StagingJobStatus,
    StagingRequest,
)
from magicstage.observability.logging import OperationContext, get_logger
from magicstage.observability.metrics import (
    staging_jobs_active,
    track_provider_call,
    track_provider_cost,
    track_stale_jobs_recovered,
    track_staging_job,
)
from magicstage.staging.object_store import ObjectStore, ObjectStoreError
from magicstage.staging.provider import (
    AIProvider,
    ProviderError,
    ProviderTimeoutError,
    StagedImage,
)
from magicstage.storage.database import LedgerDatabase, StoreUnavailableError, UnitOfWork
from magicstage.storage.jobs import JobAlreadyFinalizedError, StagingJobRepository

logger = get_logger(__name__)

MAX_ERROR_MESSAGE_LENGTH = 1000

_EXTENSIONS = {"image/png": ".png", "image/webp": ".webp", "image/jpeg": ".jpg"}


class StagingJobOrchestrator:
    """
    Drives staging jobs through reserve, provider call, and commit or refund.

    Usage:
        job = await orchestrator.submit(request)   # 402 path raises here
        orchestrator.start(job)                     # provider call + settle, in background
        await orchestrator.drain(timeout=30)       # at shutdown
    """

    def __init__(
        self,
        db: LedgerDatabase,
        ledger: CreditLedger,
        jobs: StagingJobRepository,
        provider: AIProvider,
        object_store: ObjectStore,
        provider_timeout_seconds: float = 120.0,
        credits_per_job: int = 1,
        stale_after: timedelta = timedelta(minutes=30),
    ):
        """
        Initialize orchestrator.

        Args:
            db: Ledger database (store handle)
            ledger: Credit ledger
            jobs: Staging job repository
            provider: AI staging provider
            object_store: Image store for room and staged images
            provider_timeout_seconds: Deadline for the whole provider call
            credits_per_job: Fixed credit cost per job
            stale_after: Age after which an in-flight job is considered abandoned
        """
        self.db = db
        self.ledger = ledger
        self.jobs = jobs
        self.provider = provider
        self.object_store = object_store
        self.provider_timeout_seconds = provider_timeout_seconds
        self.credits_per_job = credits_per_job
        self.stale_after = stale_after

        # Background runs started by start(); tracked for graceful shutdown
        self._pending_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Submission (steps 1-3)
    # ------------------------------------------------------------------

    async def submit(self, request: StagingRequest) -> StagingJob:
        """
        Validate, reserve credit and persist the job as processing.

        Raises:
            InsufficientCreditsError: Balance too low (nothing persisted)
            AccountNotFoundError: Organization has no credit account
            StoreUnavailableError: Store failed after retries
        """
        job = StagingJob.from_request(request)

        def reserve_and_insert(conn: UnitOfWork) -> StagingJob:
            reserved = job.model_copy(deep=True)
            reservation = self.ledger.reserve_in(
                conn, reserved.organization_id, self.credits_per_job, job_id=reserved.job_id
            )
            reserved.reservation_id = reservation.reservation_id
            reserved.transition_to(StagingJobStatus.RESERVED)
            self.jobs.insert_in(conn, reserved)
            return reserved

        reserved = await self.db.run_in_transaction(reserve_and_insert)

        def mark_processing(conn: UnitOfWork) -> StagingJob:
            processing = reserved.model_copy(deep=True)
            processing.transition_to(StagingJobStatus.PROCESSING)
            self.jobs.mark_processing_in(conn, processing)
            return processing

        processing = await self.db.run_in_transaction(mark_processing)

        logger.info(
            "Staging job submitted",
            job_id=processing.job_id,
            organization_id=processing.organization_id,
            reservation_id=processing.reservation_id,
            style=processing.style.value,
        )
        return processing

    # ------------------------------------------------------------------
    # Execution (steps 4-6)
    # ------------------------------------------------------------------

    async def run(self, job: StagingJob) -> StagingJob:
        """
        Call the provider and settle the reservation.

        Never raises for provider, object store or store failures: the job
        ends failed and refunded, or (if the store itself is down) stays in
        flight for stale-job recovery.

        Raises:
            ValueError: If the job is not processing
        """
        if job.status != StagingJobStatus.PROCESSING:
            raise ValueError(f"Job {job.job_id} is {job.status.value}, expected processing")

        log = logger.bind(job_id=job.job_id, organization_id=job.organization_id)
        staging_jobs_active.inc()
        try:
            try:
                image = await self.object_store.get(job.room_image_ref)
                staged = await self._call_provider(job, image)
                key = (
                    f"staged/{job.organization_id}/{job.job_id}"
                    f"{_EXTENSIONS.get(staged.mime_type, '.jpg')}"
                )
                staged_url = await self.object_store.put(staged.data, key, staged.mime_type)

            except (asyncio.TimeoutError, ProviderTimeoutError):
                message = f"AI provider timed out after {self.provider_timeout_seconds:g}s"
                settled = await self._fail(job, message, reason="timeout")
            except ProviderError as e:
                settled = await self._fail(job, f"AI provider error: {e}", reason="provider_error")
            except ObjectStoreError as e:
                settled = await self._fail(job, f"Image storage error: {e}", reason="storage_error")
            except Exception as e:
                log.error("Unexpected staging failure", exc_info=True)
                settled = await self._fail(
                    job, f"Unexpected error: {e.__class__.__name__}", reason="unexpected"
                )
            else:
                settled = await self._complete(job, staged_url, staged.cost_cents)

            return settled or await self.jobs.get(job.job_id) or job

        except StoreUnavailableError:
            log.error("Could not settle staging job; left in flight for recovery", exc_info=True)
            return job
        finally:
            staging_jobs_active.dec()

    async def _call_provider(self, job: StagingJob, image: bytes) -> StagedImage:
        context = OperationContext("ai_provider_call", job_id=job.job_id, style=job.style.value)
        success = False
        try:
            with context:
                staged = await asyncio.wait_for(
                    self.provider.stage(image, job.prompt, job.style, job.preferences),
                    timeout=self.provider_timeout_seconds,
                )
            success = True
            return staged
        finally:
            track_provider_call((context.duration_ms or 0.0) / 1000, success)

    def start(self, job: StagingJob) -> asyncio.Task:
        """Run a submitted job in a background task owned by the orchestrator."""
        task = asyncio.create_task(self.run(job), name=f"staging-{job.job_id}")
        self._pending_tasks.add(task)

        def on_done(finished: asyncio.Task) -> None:
            self._pending_tasks.discard(finished)
            if finished.cancelled():
                return
            error = finished.exception()
            if error is not None:
                logger.error(
                    "Background staging run crashed; job left for recovery",
                    job_id=job.job_id,
                    organization_id=job.organization_id,
                    exc_info=error,
                )

        task.add_done_callback(on_done)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._pending_tasks)

    async def drain(self, timeout: float | None = None) -> None:
        """
        Wait for background runs to settle.

        Runs still going after the timeout are cancelled; their jobs stay in
        flight and are refunded by stale-job recovery.
        """
        if not self._pending_tasks:
            return

        pending = set(self._pending_tasks)
        _, still_running = await asyncio.wait(pending, timeout=timeout)
        for task in still_running:
            task.cancel()
        if still_running:
            logger.warning(
                "Cancelled unfinished staging runs at shutdown",
                count=len(still_running),
            )
            await asyncio.gather(*still_running, return_exceptions=True)

    async def stage(self, request: StagingRequest) -> StagingJob:
        """Submit and run a job to completion in the caller's task."""
        job = await self.submit(request)
        return await self.run(job)

    async def _complete(
        self, job: StagingJob, staged_url: str, cost_cents: int
    ) -> StagingJob | None:
        def finalize(conn: UnitOfWork) -> StagingJob:
            done = job.model_copy(deep=True)
            done.staged_image_url = staged_url
            done.ai_cost_cents = cost_cents
            done.transition_to(StagingJobStatus.COMPLETED)
            self.jobs.finalize_in(conn, done)
            self.ledger.commit_in(conn, done.reservation_id, job_id=done.job_id)
            conn.after_commit(lambda: track_staging_job("completed"))
            conn.after_commit(lambda: track_provider_cost(cost_cents))
            return done

        settled = await self._settle(job, finalize)
        if settled is not None:
            logger.info(
                "Staging job completed",
                job_id=settled.job_id,
                organization_id=settled.organization_id,
                ai_cost_cents=cost_cents,
            )
        return settled

    async def _fail(self, job: StagingJob, message: str, reason: str) -> StagingJob | None:
        error_message = message[:MAX_ERROR_MESSAGE_LENGTH]

        def finalize(conn: UnitOfWork) -> StagingJob:
            failed = job.model_copy(deep=True)
            failed.error_message = error_message
            failed.transition_to(StagingJobStatus.FAILED)
            self.jobs.finalize_in(conn, failed)
            self.ledger.refund_in(conn, failed.reservation_id, job_id=failed.job_id)
            conn.after_commit(lambda: track_staging_job("failed", reason))
            return failed

        settled = await self._settle(job, finalize)
        if settled is not None:
            logger.warning(
                "Staging job failed; credit refunded",
                job_id=settled.job_id,
                organization_id=settled.organization_id,
                reason=reason,
                error=error_message,
            )
        return settled

    async def _settle(self, job: StagingJob, finalize) -> StagingJob | None:
        """Run a finalisation unit of work; None if the job was already terminal."""
        try:
            return await self.db.run_in_transaction(finalize)
        except JobAlreadyFinalizedError:
            logger.warning(
                "Late result discarded: job already finalized",
                job_id=job.job_id,
                organization_id=job.organization_id,
            )
            return None

    # ------------------------------------------------------------------
    # Queries and recovery
    # ------------------------------------------------------------------

    async def get_job(self, job_id: str) -> StagingJob | None:
        return await self.jobs.get(job_id)

    async def list_jobs(
        self, organization_id: str, limit: int = 50, offset: int = 0
    ) -> list[StagingJob]:
        return await self.jobs.list_for_organization(organization_id, limit=limit, offset=offset)

    async def recover_stale_jobs(self, older_than: timedelta | None = None) -> list[StagingJob]:
        """
        Fail and refund jobs stuck in reserved/processing past the deadline.

        Covers reservations left behind by a crash or a store outage between
        steps. Each job settles in its own unit of work; a job that finishes
        concurrently is skipped.

        Returns:
            list: Jobs this call moved to failed
        """
        window = self.stale_after if older_than is None else older_than
        stale = await self.jobs.list_stale(datetime.now(UTC) - window)

        minutes = int(window.total_seconds() // 60)
        recovered = []
        for job in stale:
            settled = await self._fail(
                job,
                f"Staging job abandoned: no result within {minutes} minutes",
                reason="stale",
            )
            if settled is not None:
                recovered.append(settled)

        track_stale_jobs_recovered(len(recovered))
        if stale:
            logger.info(
                "Stale staging jobs recovered",
                candidates=len(stale),
                recovered=len(recovered),
            )
        return recovered

"""
Tests for staging job orchestration.

Every job that reserves a credit ends in exactly one of:
- completed, with the reservation committed (balance stays decremented)
- failed, with the reservation refunded (balance restored)
"""

import asyncio
import sqlite3
from datetime import timedelta
from unittest.mock import patch

import pytest

from magicstage.ledger.errors import AccountNotFoundError, InsufficientCreditsError
from magicstage.models.ledger import LedgerEntryKind, ReservationStatus
from magicstage.models.staging import (
    StagingJobStatus,
    StagingPreferences,
    StagingRequest,
    StagingStyle,
)
from magicstage.staging.provider import ProviderError, ProviderTimeoutError

ORG = "org-test"


@pytest.fixture
def staging_request(room_image_ref) -> StagingRequest:
    return StagingRequest(
        organization_id=ORG,
        room_image_ref=room_image_ref,
        prompt="Bright Scandinavian living room",
        style=StagingStyle.MINIMALIST,
        preferences=StagingPreferences(colors=["white", "oak"]),
    )


@pytest.fixture
async def funded(ledger):
    """Account for ORG with 3 credits."""
    return await ledger.open_account(ORG, signup_bonus=3)


class TestSubmit:
    """Reservation and job creation."""

    async def test_submit_reserves_and_marks_processing(
        self, orchestrator, ledger, jobs, funded, staging_request
    ):
        job = await orchestrator.submit(staging_request)

        assert job.status == StagingJobStatus.PROCESSING
        assert job.reservation_id is not None
        assert await ledger.get_balance(ORG) == 2

        stored = await jobs.get(job.job_id)
        assert stored.status == StagingJobStatus.PROCESSING
        assert stored.preferences.colors == ["white", "oak"]

        reservation = await ledger.get_reservation(job.reservation_id)
        assert reservation.status == ReservationStatus.HELD
        assert reservation.job_id == job.job_id

    async def test_insufficient_credits_leaves_no_job(
        self, orchestrator, ledger, recorder, staging_request
    ):
        await ledger.open_account(ORG)

        with pytest.raises(InsufficientCreditsError):
            await orchestrator.submit(staging_request)

        assert await orchestrator.list_jobs(ORG) == []
        assert await recorder.list_entries(ORG) == []
        assert await ledger.list_held_reservations() == []

    async def test_unknown_account(self, orchestrator, staging_request):
        with pytest.raises(AccountNotFoundError):
            await orchestrator.submit(staging_request)

        assert await orchestrator.list_jobs(ORG) == []


class TestRun:
    """Provider call and settlement."""

    async def test_success_commits_reservation(
        self, orchestrator, ledger, recorder, fake_provider, object_store, funded, staging_request
    ):
        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.COMPLETED
        assert job.staged_image_url == f"memory://staged/{ORG}/{job.job_id}.png"
        assert job.ai_cost_cents == fake_provider.cost_cents
        assert job.completed_at is not None
        assert await ledger.get_balance(ORG) == 2

        reservation = await ledger.get_reservation(job.reservation_id)
        assert reservation.status == ReservationStatus.COMMITTED

        kinds = [e.kind for e in await recorder.entries_for_job(job.job_id)]
        assert kinds == [LedgerEntryKind.RESERVE, LedgerEntryKind.COMMIT]

        assert f"staged/{ORG}/{job.job_id}.png" in object_store.objects
        call = fake_provider.calls[0]
        assert call["prompt"] == "Bright Scandinavian living room"
        assert call["style"] == StagingStyle.MINIMALIST

    async def test_provider_error_refunds(
        self, orchestrator, ledger, recorder, fake_provider, funded, staging_request
    ):
        fake_provider.error = ProviderError("model overloaded", status_code=503)

        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.FAILED
        assert "model overloaded" in job.error_message
        assert job.staged_image_url is None
        assert await ledger.get_balance(ORG) == 3

        kinds = [e.kind for e in await recorder.entries_for_job(job.job_id)]
        assert kinds == [LedgerEntryKind.RESERVE, LedgerEntryKind.REFUND]

    async def test_provider_timeout_refunds(
        self, orchestrator, ledger, fake_provider, funded, staging_request
    ):
        fake_provider.delay_seconds = 5.0

        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.FAILED
        assert "timed out" in job.error_message
        assert await ledger.get_balance(ORG) == 3

    async def test_provider_reported_timeout_refunds(
        self, orchestrator, ledger, fake_provider, funded, staging_request
    ):
        fake_provider.error = ProviderTimeoutError("upstream deadline")

        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.FAILED
        assert "timed out" in job.error_message
        assert await ledger.get_balance(ORG) == 3

    async def test_missing_room_image_refunds(
        self, orchestrator, ledger, fake_provider, funded, staging_request
    ):
        request = staging_request.model_copy(update={"room_image_ref": "rooms/missing.jpg"})

        job = await orchestrator.stage(request)

        assert job.status == StagingJobStatus.FAILED
        assert "Image storage error" in job.error_message
        assert fake_provider.calls == []
        assert await ledger.get_balance(ORG) == 3

    async def test_storing_result_fails_refunds(
        self, orchestrator, ledger, object_store, funded, staging_request
    ):
        object_store.fail_writes = True

        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.FAILED
        assert await ledger.get_balance(ORG) == 3

    async def test_unexpected_error_refunds(
        self, orchestrator, ledger, fake_provider, funded, staging_request
    ):
        fake_provider.error = RuntimeError("boom")

        job = await orchestrator.stage(staging_request)

        assert job.status == StagingJobStatus.FAILED
        assert job.error_message == "Unexpected error: RuntimeError"
        assert await ledger.get_balance(ORG) == 3

    async def test_error_message_is_truncated(
        self, orchestrator, fake_provider, funded, staging_request
    ):
        fake_provider.error = ProviderError("x" * 5000)

        job = await orchestrator.stage(staging_request)

        assert len(job.error_message) == 1000

    async def test_run_rejects_job_not_processing(
        self, orchestrator, funded, staging_request
    ):
        job = await orchestrator.stage(staging_request)

        with pytest.raises(ValueError):
            await orchestrator.run(job)

    async def test_spending_every_credit(
        self, orchestrator, ledger, funded, staging_request
    ):
        for _ in range(3):
            job = await orchestrator.stage(staging_request)
            assert job.status == StagingJobStatus.COMPLETED

        assert await ledger.get_balance(ORG) == 0
        with pytest.raises(InsufficientCreditsError):
            await orchestrator.submit(staging_request)


class TestRecovery:
    """Stale-job recovery and the late-result race."""

    async def test_recover_stale_jobs_refunds(
        self, orchestrator, ledger, jobs, funded, staging_request
    ):
        job = await orchestrator.submit(staging_request)

        recovered = await orchestrator.recover_stale_jobs(older_than=timedelta(0))

        assert [j.job_id for j in recovered] == [job.job_id]
        stored = await jobs.get(job.job_id)
        assert stored.status == StagingJobStatus.FAILED
        assert "abandoned" in stored.error_message
        assert await ledger.get_balance(ORG) == 3

    async def test_recent_jobs_are_not_stale(self, orchestrator, funded, staging_request):
        await orchestrator.submit(staging_request)

        assert await orchestrator.recover_stale_jobs() == []

    async def test_late_result_is_discarded(
        self, orchestrator, ledger, recorder, jobs, funded, staging_request
    ):
        job = await orchestrator.submit(staging_request)
        await orchestrator.recover_stale_jobs(older_than=timedelta(0))

        settled = await orchestrator.run(job)

        assert settled.status == StagingJobStatus.FAILED
        assert await ledger.get_balance(ORG) == 3

        kinds = [e.kind for e in await recorder.entries_for_job(job.job_id)]
        assert kinds == [LedgerEntryKind.RESERVE, LedgerEntryKind.REFUND]

    async def test_recovery_skips_finished_jobs(self, orchestrator, funded, staging_request):
        await orchestrator.stage(staging_request)

        assert await orchestrator.recover_stale_jobs(older_than=timedelta(0)) == []


class TestBackgroundRuns:
    """start() and drain()."""

    async def test_start_and_drain(
        self, orchestrator, ledger, jobs, funded, staging_request
    ):
        job = await orchestrator.submit(staging_request)

        orchestrator.start(job)
        assert orchestrator.pending_count == 1

        await orchestrator.drain()

        assert orchestrator.pending_count == 0
        assert (await jobs.get(job.job_id)).status == StagingJobStatus.COMPLETED
        assert await ledger.get_balance(ORG) == 2

    async def test_drain_timeout_cancels_and_leaves_job_in_flight(
        self, orchestrator, ledger, jobs, fake_provider, funded, staging_request
    ):
        fake_provider.delay_seconds = 5.0
        orchestrator.provider_timeout_seconds = 30.0
        job = await orchestrator.submit(staging_request)
        task = orchestrator.start(job)

        await orchestrator.drain(timeout=0.05)

        assert task.cancelled()
        assert (await jobs.get(job.job_id)).status == StagingJobStatus.PROCESSING
        assert await ledger.get_balance(ORG) == 2

        recovered = await orchestrator.recover_stale_jobs(older_than=timedelta(0))
        assert len(recovered) == 1
        assert await ledger.get_balance(ORG) == 3

    async def test_drain_with_nothing_pending(self, orchestrator):
        await asyncio.wait_for(orchestrator.drain(), timeout=1.0)


class TestStoreFailures:
    """Settlement when the ledger store itself fails."""

    async def test_settlement_outage_left_in_flight_then_recovered(
        self,
        orchestrator,
        ledger,
        recorder,
        jobs,
        ledger_db,
        fake_provider,
        funded,
        staging_request,
    ):
        job = await orchestrator.submit(staging_request)

        with patch.object(
            ledger_db, "_connect", side_effect=sqlite3.OperationalError("database is locked")
        ) as connect:
            settled = await orchestrator.run(job)

        assert connect.call_count == ledger_db.transient_retry_attempts
        assert len(fake_provider.calls) == 1
        assert settled.status == StagingJobStatus.PROCESSING
        assert (await jobs.get(job.job_id)).status == StagingJobStatus.PROCESSING
        assert await ledger.get_balance(ORG) == 2

        recovered = await orchestrator.recover_stale_jobs(older_than=timedelta(0))

        assert [j.job_id for j in recovered] == [job.job_id]
        assert (await jobs.get(job.job_id)).status == StagingJobStatus.FAILED
        assert await ledger.get_balance(ORG) == 3
        kinds = [e.kind for e in await recorder.entries_for_job(job.job_id)]
        assert kinds == [LedgerEntryKind.RESERVE, LedgerEntryKind.REFUND]
        assert (await recorder.reconcile(ORG)).consistent

    async def test_background_crash_is_logged_with_job_id(
        self, orchestrator, ledger, jobs, funded, staging_request
    ):
        job = await orchestrator.submit(staging_request)
        corrupt = sqlite3.DatabaseError("database disk image is malformed")

        with (
            patch.object(jobs, "finalize_in", side_effect=corrupt),
            patch("magicstage.staging.orchestrator.logger") as log,
        ):
            task = orchestrator.start(job)
            await orchestrator.drain()

        assert task.exception() is corrupt
        assert orchestrator.pending_count == 0
        crashes = [c for c in log.error.call_args_list if c.kwargs.get("job_id") == job.job_id]
        assert len(crashes) == 1
        assert crashes[0].kwargs["exc_info"] is corrupt

        # Nothing settled: the reservation is still held until recovery
        assert (await jobs.get(job.job_id)).status == StagingJobStatus.PROCESSING
        await orchestrator.recover_stale_jobs(older_than=timedelta(0))
        assert await ledger.get_balance(ORG) == 3

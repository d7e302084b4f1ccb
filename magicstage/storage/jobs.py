"""
Staging job persistence.

Writes take the caller's unit of work (``*_in`` methods) so the orchestrator
can couple job transitions with ledger mutations in a single transaction.
"""

import json
import logging
import sqlite3
from datetime import datetime

from magicstage.models.staging import (
    IN_FLIGHT_STATUSES,
    StagingJob,
    StagingJobStatus,
    StagingPreferences,
    StagingStyle,
)
from magicstage.storage.database import LedgerDatabase, parse_timestamp

logger = logging.getLogger(__name__)


class JobAlreadyFinalizedError(Exception):
    """The job reached a terminal state in another unit of work."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Staging job {job_id} is already finalized")


def _row_to_job(row: sqlite3.Row) -> StagingJob:
    preferences = None
    if row["preferences"]:
        preferences = StagingPreferences.model_validate(json.loads(row["preferences"]))

    return StagingJob(
        job_id=row["job_id"],
        organization_id=row["organization_id"],
        room_image_ref=row["room_image_ref"],
        prompt=row["prompt"],
        style=StagingStyle(row["style"]),
        preferences=preferences,
        status=StagingJobStatus(row["status"]),
        reservation_id=row["reservation_id"],
        staged_image_url=row["staged_image_url"],
        ai_cost_cents=row["ai_cost_cents"],
        error_message=row["error_message"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
        completed_at=parse_timestamp(row["completed_at"]),
    )


class StagingJobRepository:
    """Staging job rows in the ledger database."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def insert_in(self, conn: sqlite3.Connection, job: StagingJob) -> None:
        preferences = (
            json.dumps(job.preferences.model_dump(mode="json", exclude_none=True))
            if job.preferences
            else None
        )
        conn.execute(
            """
            INSERT INTO staging_jobs (
                job_id, organization_id, room_image_ref, prompt, style,
                preferences, status, reservation_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.job_id,
                job.organization_id,
                job.room_image_ref,
                job.prompt,
                job.style.value,
                preferences,
                job.status.value,
                job.reservation_id,
                job.created_at.isoformat(timespec="microseconds"),
                job.updated_at.isoformat(timespec="microseconds"),
            ),
        )

    def mark_processing_in(self, conn: sqlite3.Connection, job: StagingJob) -> None:
        """
        Persist reserved -> processing.

        Raises:
            JobAlreadyFinalizedError: If recovery failed the job first
        """
        cursor = conn.execute(
            """
            UPDATE staging_jobs
            SET status = ?, updated_at = ?
            WHERE job_id = ? AND status = ?
            """,
            (
                StagingJobStatus.PROCESSING.value,
                job.updated_at.isoformat(timespec="microseconds"),
                job.job_id,
                StagingJobStatus.RESERVED.value,
            ),
        )
        if cursor.rowcount == 0:
            raise JobAlreadyFinalizedError(job.job_id)

    def finalize_in(self, conn: sqlite3.Connection, job: StagingJob) -> None:
        """
        Persist a terminal transition.

        The write is guarded on the row still being in flight, so exactly one
        of (provider result, stale-job recovery) finalizes the job.

        Raises:
            JobAlreadyFinalizedError: If the row is already terminal
        """
        placeholders = ", ".join("?" for _ in IN_FLIGHT_STATUSES)
        cursor = conn.execute(
            f"""
            UPDATE staging_jobs
            SET status = ?,
                staged_image_url = ?,
                ai_cost_cents = ?,
                error_message = ?,
                updated_at = ?,
                completed_at = ?
            WHERE job_id = ? AND status IN ({placeholders})
            """,
            (
                job.status.value,
                job.staged_image_url,
                job.ai_cost_cents,
                job.error_message,
                job.updated_at.isoformat(timespec="microseconds"),
                job.completed_at.isoformat(timespec="microseconds") if job.completed_at else None,
                job.job_id,
                *(status.value for status in IN_FLIGHT_STATUSES),
            ),
        )
        if cursor.rowcount == 0:
            raise JobAlreadyFinalizedError(job.job_id)

    def get_in(self, conn: sqlite3.Connection, job_id: str) -> StagingJob | None:
        row = conn.execute("SELECT * FROM staging_jobs WHERE job_id = ?", (job_id,)).fetchone()
        return _row_to_job(row) if row else None

    async def get(self, job_id: str) -> StagingJob | None:
        return await self.db.run_read(self.get_in, job_id)

    async def list_for_organization(
        self, organization_id: str, limit: int = 50, offset: int = 0
    ) -> list[StagingJob]:
        """Most recent jobs first."""

        def query(conn: sqlite3.Connection) -> list[StagingJob]:
            rows = conn.execute(
                """
                SELECT * FROM staging_jobs
                WHERE organization_id = ?
                ORDER BY created_at DESC
                LIMIT ? OFFSET ?
                """,
                (organization_id, limit, offset),
            ).fetchall()
            return [_row_to_job(row) for row in rows]

        return await self.db.run_read(query)

    async def list_stale(self, updated_before: datetime, limit: int = 100) -> list[StagingJob]:
        """In-flight jobs whose last transition is older than updated_before."""
        placeholders = ", ".join("?" for _ in IN_FLIGHT_STATUSES)

        def query(conn: sqlite3.Connection) -> list[StagingJob]:
            rows = conn.execute(
                f"""
                SELECT * FROM staging_jobs
                WHERE status IN ({placeholders}) AND updated_at < ?
                ORDER BY updated_at
                LIMIT ?
                """,
                (
                    *(status.value for status in IN_FLIGHT_STATUSES),
                    updated_before.isoformat(timespec="microseconds"),
                    limit,
                ),
            ).fetchall()
            return [_row_to_job(row) for row in rows]

        return await self.db.run_read(query)

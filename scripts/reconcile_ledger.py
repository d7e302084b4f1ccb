#!/usr/bin/env python3
"""
Ledger reconciliation and stale-job recovery.

Checks every credit account: the balance must equal the sum of its ledger
entries. With --recover-stale, first fails and refunds staging jobs stuck in
reserved/processing (left behind by a crash or a store outage).

Usage:
  python scripts/reconcile_ledger.py [--recover-stale] [--older-than-minutes N]

Exit status is 1 when any account is inconsistent, so the script can run
from cron and alert.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from datetime import timedelta
from pathlib import Path

# Add repo root to sys.path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))


logger = logging.getLogger(__name__)


async def run_job(recover_stale: bool, older_than_minutes: int | None) -> int:
    from magicstage.config import get_settings
    from magicstage.ledger.credit_ledger import CreditLedger
    from magicstage.ledger.usage_recorder import UsageRecorder
    from magicstage.staging.object_store import LocalObjectStore
    from magicstage.staging.orchestrator import StagingJobOrchestrator
    from magicstage.staging.provider import GeminiStagingProvider
    from magicstage.storage.database import LedgerDatabase
    from magicstage.storage.jobs import StagingJobRepository

    settings = get_settings()

    db = LedgerDatabase(
        settings.database.path,
        busy_timeout_seconds=settings.database.busy_timeout_seconds,
        transient_retry_attempts=settings.database.transient_retry_attempts,
    )
    await db.initialize()

    recorder = UsageRecorder(db)
    ledger = CreditLedger(db, recorder)

    try:
        if recover_stale:
            # Recovery never calls the provider; it only fails and refunds.
            provider = GeminiStagingProvider(settings.ai)
            orchestrator = StagingJobOrchestrator(
                db,
                ledger,
                StagingJobRepository(db),
                provider,
                LocalObjectStore(settings.object_store.root_path),
                provider_timeout_seconds=settings.staging.provider_timeout_seconds,
                credits_per_job=settings.staging.credits_per_job,
                stale_after=timedelta(minutes=settings.staging.stale_job_minutes),
            )
            older_than = (
                timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
            )
            try:
                recovered = await orchestrator.recover_stale_jobs(older_than=older_than)
            finally:
                await provider.aclose()
            logger.info(f"Recovered {len(recovered)} stale staging job(s)")
            for job in recovered:
                logger.info(f"  {job.job_id} ({job.organization_id}) -> failed, refunded")

        reports = await recorder.reconcile_all()
    finally:
        db.close()

    inconsistent = [report for report in reports if not report.consistent]
    logger.info(f"Reconciled {len(reports)} account(s), {len(inconsistent)} inconsistent")
    for report in reports:
        marker = "✓" if report.consistent else "✗"
        logger.info(
            f"  {marker} {report.organization_id}: balance={report.balance} "
            f"entries={report.entries_total} drift={report.drift} "
            f"held={report.held_reservations}"
        )

    return 1 if inconsistent else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Reconcile the credit ledger")
    parser.add_argument(
        "--recover-stale",
        action="store_true",
        help="Fail and refund staging jobs stuck in flight before reconciling",
    )
    parser.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help="Stale window (default: STAGING_STALE_JOB_MINUTES)",
    )
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    sys.exit(asyncio.run(run_job(args.recover_stale, args.older_than_minutes)))


if __name__ == "__main__":
    main()

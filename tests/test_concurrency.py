"""
Concurrency tests for the credit ledger.

Reservations race in worker threads against the same SQLite file; the
conditional UPDATE inside BEGIN IMMEDIATE must let exactly as many succeed
as the balance covers.
"""

import asyncio

import pytest

from magicstage.ledger.errors import InsufficientCreditsError
from magicstage.models.payment import WebhookOutcome
from magicstage.models.staging import StagingJobStatus, StagingRequest

ORG = "org-test"


async def test_two_reservations_for_the_last_credit(ledger):
    await ledger.open_account(ORG, signup_bonus=1)

    results = await asyncio.gather(
        ledger.reserve(ORG),
        ledger.reserve(ORG),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    failures = [r for r in results if isinstance(r, InsufficientCreditsError)]
    assert len(successes) == 1
    assert len(failures) == 1
    assert await ledger.get_balance(ORG) == 0


@pytest.mark.parametrize("balance,attempts", [(3, 10), (5, 5)])
async def test_reservations_never_overdraw(ledger, recorder, balance, attempts):
    await ledger.open_account(ORG, signup_bonus=balance)

    results = await asyncio.gather(
        *(ledger.reserve(ORG) for _ in range(attempts)),
        return_exceptions=True,
    )

    successes = [r for r in results if not isinstance(r, Exception)]
    assert len(successes) == min(balance, attempts)
    assert all(
        isinstance(r, InsufficientCreditsError) for r in results if isinstance(r, Exception)
    )
    assert await ledger.get_balance(ORG) == balance - len(successes)

    report = await recorder.reconcile(ORG)
    assert report.consistent
    assert report.held_reservations == len(successes)


async def test_concurrent_submissions(orchestrator, ledger, room_image_ref):
    await ledger.open_account(ORG, signup_bonus=2)
    request = StagingRequest(organization_id=ORG, room_image_ref=room_image_ref)

    results = await asyncio.gather(
        *(orchestrator.stage(request) for _ in range(4)),
        return_exceptions=True,
    )

    completed = [r for r in results if not isinstance(r, Exception)]
    assert len(completed) == 2
    assert all(job.status == StagingJobStatus.COMPLETED for job in completed)
    assert sum(isinstance(r, InsufficientCreditsError) for r in results) == 2
    assert await ledger.get_balance(ORG) == 0
    assert len(await orchestrator.list_jobs(ORG)) == 2


async def test_concurrent_webhook_redelivery(ledger, webhook_processor, payment_event):
    await ledger.open_account(ORG)
    event = payment_event(credits=10)

    results = await asyncio.gather(
        *(webhook_processor.process_event(event) for _ in range(5)),
    )

    outcomes = [r.outcome for r in results]
    assert outcomes.count(WebhookOutcome.APPLIED) == 1
    assert outcomes.count(WebhookOutcome.DUPLICATE) == 4
    assert await ledger.get_balance(ORG) == 10

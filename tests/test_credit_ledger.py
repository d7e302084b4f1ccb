"""
Tests for the credit ledger.

Tests:
- Account opening and signup bonus (granted once)
- Reserve / commit / refund balance effects
- Insufficient credits (nothing written)
- Grant idempotency by event id and by payment id
- Settlement guards (no commit after refund, no double refund)
"""

import sqlite3

import pytest

from magicstage.ledger.credit_ledger import signup_bonus_event_id
from magicstage.ledger.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerInvariantViolation,
    ReservationNotFoundError,
)
from magicstage.models.ledger import GrantOutcome, LedgerEntryKind, ReservationStatus


class TestAccounts:
    """Account lifecycle."""

    async def test_open_account_starts_at_zero(self, ledger):
        account = await ledger.open_account("org-a")

        assert account.organization_id == "org-a"
        assert account.balance == 0

    async def test_signup_bonus_granted_once(self, ledger, recorder, payments):
        await ledger.open_account("org-a", signup_bonus=3)
        reopened = await ledger.open_account("org-a", signup_bonus=3)

        assert reopened.balance == 3

        entries = await recorder.list_entries("org-a")
        assert [e.kind for e in entries] == [LedgerEntryKind.GRANT]
        assert entries[0].related_payment_id == signup_bonus_event_id("org-a")

        bonus_event = await payments.get(signup_bonus_event_id("org-a"))
        assert bonus_event is not None
        assert bonus_event.event_type == "signup_bonus"

    async def test_get_balance_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.get_balance("org-missing")

    async def test_get_account_unknown_returns_none(self, ledger):
        assert await ledger.get_account("org-missing") is None


class TestReserve:
    """Reservations hold credits for in-flight work."""

    async def test_reserve_decrements_balance(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=5)

        reservation = await ledger.reserve("org-a", 2, job_id="job_1")

        assert reservation.status == ReservationStatus.HELD
        assert reservation.amount == 2
        assert await ledger.get_balance("org-a") == 3

        entries = await recorder.list_entries("org-a")
        reserve_entry = entries[-1]
        assert reserve_entry.kind == LedgerEntryKind.RESERVE
        assert reserve_entry.amount == -2
        assert reserve_entry.balance_after == 3
        assert reserve_entry.related_job_id == "job_1"

    async def test_reserve_insufficient_writes_nothing(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=1)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.reserve("org-a", 2)

        assert exc_info.value.available == 1
        assert exc_info.value.requested == 2
        assert await ledger.get_balance("org-a") == 1
        assert len(await recorder.list_entries("org-a")) == 1
        assert await ledger.list_held_reservations() == []

    async def test_reserve_on_empty_account(self, ledger):
        await ledger.open_account("org-a")

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.reserve("org-a")

        assert exc_info.value.available == 0

    async def test_reserve_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.reserve("org-missing")

    async def test_reserve_rejects_non_positive_amount(self, ledger):
        await ledger.open_account("org-a", signup_bonus=1)

        with pytest.raises(ValueError):
            await ledger.reserve("org-a", 0)


class TestSettlement:
    """Commit and refund of reservations."""

    async def test_commit_keeps_balance(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")

        committed = await ledger.commit(reservation.reservation_id)

        assert committed.status == ReservationStatus.COMMITTED
        assert await ledger.get_balance("org-a") == 2

        entries = await recorder.list_entries("org-a")
        assert entries[-1].kind == LedgerEntryKind.COMMIT
        assert entries[-1].amount == 0

    async def test_commit_is_idempotent(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")

        await ledger.commit(reservation.reservation_id)
        await ledger.commit(reservation.reservation_id)

        kinds = [e.kind for e in await recorder.list_entries("org-a")]
        assert kinds.count(LedgerEntryKind.COMMIT) == 1

    async def test_refund_restores_balance(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")

        refunded = await ledger.refund(reservation.reservation_id)

        assert refunded.status == ReservationStatus.REFUNDED
        assert await ledger.get_balance("org-a") == 3

        entries = await recorder.list_entries("org-a")
        assert entries[-1].kind == LedgerEntryKind.REFUND
        assert entries[-1].amount == 1
        assert entries[-1].balance_after == 3

    async def test_double_refund_never_double_credits(self, ledger, recorder):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")

        await ledger.refund(reservation.reservation_id)
        await ledger.refund(reservation.reservation_id)

        assert await ledger.get_balance("org-a") == 3
        kinds = [e.kind for e in await recorder.list_entries("org-a")]
        assert kinds.count(LedgerEntryKind.REFUND) == 1

    async def test_commit_after_refund_is_invariant_violation(self, ledger):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")
        await ledger.refund(reservation.reservation_id)

        with pytest.raises(LedgerInvariantViolation):
            await ledger.commit(reservation.reservation_id)

    async def test_refund_after_commit_is_invariant_violation(self, ledger):
        await ledger.open_account("org-a", signup_bonus=3)
        reservation = await ledger.reserve("org-a")
        await ledger.commit(reservation.reservation_id)

        with pytest.raises(LedgerInvariantViolation):
            await ledger.refund(reservation.reservation_id)

        assert await ledger.get_balance("org-a") == 2

    async def test_settle_unknown_reservation(self, ledger):
        with pytest.raises(ReservationNotFoundError):
            await ledger.commit("res_missing")
        with pytest.raises(ReservationNotFoundError):
            await ledger.refund("res_missing")

    async def test_list_held_reservations(self, ledger):
        await ledger.open_account("org-a", signup_bonus=3)
        await ledger.open_account("org-b", signup_bonus=3)
        held_a = await ledger.reserve("org-a")
        settled = await ledger.reserve("org-a")
        await ledger.reserve("org-b")
        await ledger.commit(settled.reservation_id)

        held = await ledger.list_held_reservations(organization_id="org-a")

        assert [r.reservation_id for r in held] == [held_a.reservation_id]
        assert len(await ledger.list_held_reservations()) == 2


class TestGrant:
    """Grants are applied exactly once."""

    async def test_grant_applies(self, ledger):
        await ledger.open_account("org-a")

        result = await ledger.grant("org-a", 10, "evt_1", payment_id="pi_1")

        assert result.outcome == GrantOutcome.APPLIED
        assert result.applied
        assert result.balance == 10
        assert result.entry.kind == LedgerEntryKind.GRANT
        assert result.entry.related_payment_id == "pi_1"

    async def test_grant_same_event_twice(self, ledger):
        await ledger.open_account("org-a")

        await ledger.grant("org-a", 10, "evt_1", payment_id="pi_1")
        second = await ledger.grant("org-a", 10, "evt_1", payment_id="pi_1")

        assert second.outcome == GrantOutcome.ALREADY_APPLIED
        assert second.balance is None
        assert await ledger.get_balance("org-a") == 10

    async def test_grant_same_payment_under_new_event_id(self, ledger):
        await ledger.open_account("org-a")

        await ledger.grant("org-a", 10, "evt_1", payment_id="pi_1")
        second = await ledger.grant("org-a", 10, "evt_2", payment_id="pi_1")

        assert second.outcome == GrantOutcome.ALREADY_APPLIED
        assert await ledger.get_balance("org-a") == 10

    async def test_grant_unknown_account(self, ledger):
        with pytest.raises(AccountNotFoundError):
            await ledger.grant("org-missing", 10, "evt_1")

    async def test_grant_rejects_non_positive_amount(self, ledger):
        await ledger.open_account("org-a")

        with pytest.raises(ValueError):
            await ledger.grant("org-a", 0, "evt_1")


class TestStorageGuards:
    """Constraints enforced by the schema itself."""

    async def test_ledger_entries_are_append_only(self, ledger, ledger_db):
        await ledger.open_account("org-a", signup_bonus=3)

        def tamper(conn):
            conn.execute("UPDATE ledger_entries SET amount = 100")

        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            await ledger_db.run_in_transaction(tamper)

        def delete(conn):
            conn.execute("DELETE FROM ledger_entries")

        with pytest.raises(sqlite3.IntegrityError, match="append-only"):
            await ledger_db.run_in_transaction(delete)

    async def test_balance_cannot_go_negative(self, ledger, ledger_db):
        await ledger.open_account("org-a", signup_bonus=1)

        def overdraw(conn):
            conn.execute(
                "UPDATE credit_accounts SET balance = balance - 5 WHERE organization_id = 'org-a'"
            )

        with pytest.raises(sqlite3.IntegrityError):
            await ledger_db.run_in_transaction(overdraw)

        assert await ledger.get_balance("org-a") == 1

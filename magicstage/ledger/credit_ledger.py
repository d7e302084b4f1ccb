"""
Credit ledger: the only code path that mutates credit balances.

Operations:
- reserve: pessimistic hold, decrements immediately iff balance >= amount
- commit: makes a reservation final (no balance change)
- refund: restores a held reservation exactly once
- grant: credits a purchase or bonus exactly once per external event

Each operation has a synchronous ``*_in(conn, ...)`` form that runs inside a
caller-supplied unit of work (so the orchestrator can couple it with a job
transition) and an async form that opens its own unit of work.
"""

import logging
import sqlite3
from datetime import datetime
from uuid import uuid4

from magicstage.ledger.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerInvariantViolation,
    ReservationNotFoundError,
)
from magicstage.ledger.usage_recorder import UsageRecorder
from magicstage.models.ledger import (
    CreditAccount,
    GrantOutcome,
    GrantResult,
    LedgerEntryKind,
    Reservation,
    ReservationStatus,
)
from magicstage.models.payment import PaymentEvent, PaymentEventStatus
from magicstage.observability.metrics import track_insufficient_credits
from magicstage.storage.database import LedgerDatabase, UnitOfWork, parse_timestamp, utc_now_iso
from magicstage.storage.payments import PaymentEventRepository

logger = logging.getLogger(__name__)


def signup_bonus_event_id(organization_id: str) -> str:
    return f"signup-bonus:{organization_id}"


def _row_to_account(row: sqlite3.Row) -> CreditAccount:
    return CreditAccount(
        organization_id=row["organization_id"],
        balance=row["balance"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_reservation(row: sqlite3.Row) -> Reservation:
    return Reservation(
        reservation_id=row["reservation_id"],
        organization_id=row["organization_id"],
        amount=row["amount"],
        status=ReservationStatus(row["status"]),
        job_id=row["job_id"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


class CreditLedger:
    """
    Per-organization prepaid credit balances.

    Invariants held by every operation:
    - balance never goes negative (also a CHECK constraint)
    - exactly one ledger entry per balance change, written in the same unit of work
    - sum of entry amounts equals the balance
    """

    def __init__(
        self,
        db: LedgerDatabase,
        recorder: UsageRecorder,
        payments: PaymentEventRepository | None = None,
    ):
        self.db = db
        self.recorder = recorder
        self.payments = payments or PaymentEventRepository(db)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def open_account_in(
        self, conn: UnitOfWork, organization_id: str, signup_bonus: int = 0
    ) -> CreditAccount:
        """
        Create the account if missing and grant the signup bonus once.

        Idempotent: reopening an existing account changes nothing.
        """
        now = utc_now_iso()
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO credit_accounts (organization_id, balance, created_at, updated_at)
            VALUES (?, 0, ?, ?)
            """,
            (organization_id, now, now),
        )

        if cursor.rowcount:
            conn.after_commit(
                lambda: logger.info(
                    "Opened credit account",
                    extra={"organization_id": organization_id, "signup_bonus": signup_bonus},
                )
            )
            if signup_bonus > 0:
                self.grant_in(
                    conn,
                    organization_id,
                    signup_bonus,
                    signup_bonus_event_id(organization_id),
                    event_type="signup_bonus",
                )

        account = self.get_account_in(conn, organization_id)
        if account is None:
            raise LedgerInvariantViolation(
                "open_account",
                "Account missing right after creation",
                organization_id=organization_id,
            )
        return account

    async def open_account(self, organization_id: str, signup_bonus: int = 0) -> CreditAccount:
        return await self.db.run_in_transaction(self.open_account_in, organization_id, signup_bonus)

    def get_account_in(self, conn: sqlite3.Connection, organization_id: str) -> CreditAccount | None:
        row = conn.execute(
            "SELECT * FROM credit_accounts WHERE organization_id = ?", (organization_id,)
        ).fetchone()
        return _row_to_account(row) if row else None

    async def get_account(self, organization_id: str) -> CreditAccount | None:
        return await self.db.run_read(self.get_account_in, organization_id)

    async def get_balance(self, organization_id: str) -> int:
        """
        Raises:
            AccountNotFoundError: If the organization has no account
        """
        account = await self.get_account(organization_id)
        if account is None:
            raise AccountNotFoundError(organization_id)
        return account.balance

    def _balance_in(self, conn: sqlite3.Connection, organization_id: str) -> int:
        row = conn.execute(
            "SELECT balance FROM credit_accounts WHERE organization_id = ?", (organization_id,)
        ).fetchone()
        if row is None:
            raise AccountNotFoundError(organization_id)
        return row["balance"]

    # ------------------------------------------------------------------
    # Reserve / commit / refund
    # ------------------------------------------------------------------

    def reserve_in(
        self,
        conn: UnitOfWork,
        organization_id: str,
        amount: int = 1,
        job_id: str | None = None,
    ) -> Reservation:
        """
        Hold credits for in-flight work.

        The conditional UPDATE is the check: it decrements only while the
        balance covers the amount, so two reservations racing for the last
        credit cannot both succeed.

        Raises:
            ValueError: If amount < 1
            AccountNotFoundError: If the organization has no account
            InsufficientCreditsError: If balance < amount (nothing is written)
        """
        if amount < 1:
            raise ValueError(f"Reservation amount must be positive, got {amount}")

        now = utc_now_iso()
        cursor = conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance - ?, updated_at = ?
            WHERE organization_id = ? AND balance >= ?
            """,
            (amount, now, organization_id, amount),
        )

        if cursor.rowcount == 0:
            available = self._balance_in(conn, organization_id)
            track_insufficient_credits()
            logger.info(
                "Reservation rejected: insufficient credits",
                extra={
                    "organization_id": organization_id,
                    "requested": amount,
                    "available": available,
                },
            )
            raise InsufficientCreditsError(organization_id, amount, available)

        balance_after = self._balance_in(conn, organization_id)

        reservation = Reservation(
            reservation_id=f"res_{uuid4().hex}",
            organization_id=organization_id,
            amount=amount,
            status=ReservationStatus.HELD,
            job_id=job_id,
            created_at=parse_timestamp(now),
            updated_at=parse_timestamp(now),
        )
        conn.execute(
            """
            INSERT INTO reservations (
                reservation_id, organization_id, amount, status, job_id, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                reservation.reservation_id,
                organization_id,
                amount,
                reservation.status.value,
                job_id,
                now,
                now,
            ),
        )

        self.recorder.record_in(
            conn,
            organization_id=organization_id,
            kind=LedgerEntryKind.RESERVE,
            amount=-amount,
            balance_after=balance_after,
            reservation_id=reservation.reservation_id,
            related_job_id=job_id,
        )

        conn.after_commit(
            lambda: logger.info(
                "Reserved credits",
                extra={
                    "organization_id": organization_id,
                    "reservation_id": reservation.reservation_id,
                    "amount": amount,
                    "balance_after": balance_after,
                },
            )
        )
        return reservation

    async def reserve(
        self, organization_id: str, amount: int = 1, job_id: str | None = None
    ) -> Reservation:
        return await self.db.run_in_transaction(self.reserve_in, organization_id, amount, job_id)

    def get_reservation_in(self, conn: sqlite3.Connection, reservation_id: str) -> Reservation:
        """
        Raises:
            ReservationNotFoundError: If the reservation does not exist
        """
        row = conn.execute(
            "SELECT * FROM reservations WHERE reservation_id = ?", (reservation_id,)
        ).fetchone()
        if row is None:
            raise ReservationNotFoundError(reservation_id)
        return _row_to_reservation(row)

    async def get_reservation(self, reservation_id: str) -> Reservation:
        return await self.db.run_read(self.get_reservation_in, reservation_id)

    def _settle_in(
        self, conn: UnitOfWork, reservation: Reservation, status: ReservationStatus, now: str
    ) -> None:
        cursor = conn.execute(
            """
            UPDATE reservations SET status = ?, updated_at = ?
            WHERE reservation_id = ? AND status = 'held'
            """,
            (status.value, now, reservation.reservation_id),
        )
        if cursor.rowcount != 1:
            raise LedgerInvariantViolation(
                status.value,
                "Reservation left the held state inside a unit of work",
                reservation_id=reservation.reservation_id,
            )

    def commit_in(
        self, conn: UnitOfWork, reservation_id: str, job_id: str | None = None
    ) -> Reservation:
        """
        Make a reservation final. No balance change; writes a zero-amount entry.

        Idempotent when already committed.

        Raises:
            ReservationNotFoundError: If the reservation does not exist
            LedgerInvariantViolation: If the reservation was already refunded
        """
        reservation = self.get_reservation_in(conn, reservation_id)

        if reservation.status == ReservationStatus.COMMITTED:
            return reservation
        if reservation.status == ReservationStatus.REFUNDED:
            raise LedgerInvariantViolation(
                "commit",
                "Cannot commit a refunded reservation",
                reservation_id=reservation_id,
                organization_id=reservation.organization_id,
            )

        now = utc_now_iso()
        self._settle_in(conn, reservation, ReservationStatus.COMMITTED, now)

        self.recorder.record_in(
            conn,
            organization_id=reservation.organization_id,
            kind=LedgerEntryKind.COMMIT,
            amount=0,
            balance_after=self._balance_in(conn, reservation.organization_id),
            reservation_id=reservation_id,
            related_job_id=job_id or reservation.job_id,
        )

        reservation.status = ReservationStatus.COMMITTED
        reservation.updated_at = parse_timestamp(now)
        return reservation

    async def commit(self, reservation_id: str, job_id: str | None = None) -> Reservation:
        return await self.db.run_in_transaction(self.commit_in, reservation_id, job_id)

    def refund_in(
        self, conn: UnitOfWork, reservation_id: str, job_id: str | None = None
    ) -> Reservation:
        """
        Reverse a held reservation, restoring its amount.

        Idempotent: a second refund is a no-op and never double-credits.

        Raises:
            ReservationNotFoundError: If the reservation does not exist
            LedgerInvariantViolation: If the reservation was already committed
        """
        reservation = self.get_reservation_in(conn, reservation_id)

        if reservation.status == ReservationStatus.REFUNDED:
            logger.warning(
                "Reservation already refunded",
                extra={
                    "reservation_id": reservation_id,
                    "organization_id": reservation.organization_id,
                },
            )
            return reservation
        if reservation.status == ReservationStatus.COMMITTED:
            raise LedgerInvariantViolation(
                "refund",
                "Cannot refund a committed reservation",
                reservation_id=reservation_id,
                organization_id=reservation.organization_id,
            )

        now = utc_now_iso()
        self._settle_in(conn, reservation, ReservationStatus.REFUNDED, now)
        conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance + ?, updated_at = ?
            WHERE organization_id = ?
            """,
            (reservation.amount, now, reservation.organization_id),
        )
        balance_after = self._balance_in(conn, reservation.organization_id)

        self.recorder.record_in(
            conn,
            organization_id=reservation.organization_id,
            kind=LedgerEntryKind.REFUND,
            amount=reservation.amount,
            balance_after=balance_after,
            reservation_id=reservation_id,
            related_job_id=job_id or reservation.job_id,
        )

        conn.after_commit(
            lambda: logger.info(
                "Refunded reservation",
                extra={
                    "organization_id": reservation.organization_id,
                    "reservation_id": reservation_id,
                    "amount": reservation.amount,
                    "balance_after": balance_after,
                },
            )
        )

        reservation.status = ReservationStatus.REFUNDED
        reservation.updated_at = parse_timestamp(now)
        return reservation

    async def refund(self, reservation_id: str, job_id: str | None = None) -> Reservation:
        return await self.db.run_in_transaction(self.refund_in, reservation_id, job_id)

    async def list_held_reservations(
        self,
        older_than: datetime | None = None,
        organization_id: str | None = None,
    ) -> list[Reservation]:
        """Reservations still held, oldest first."""
        clauses = ["status = 'held'"]
        params: list = []
        if older_than is not None:
            clauses.append("created_at < ?")
            params.append(older_than.isoformat(timespec="microseconds"))
        if organization_id is not None:
            clauses.append("organization_id = ?")
            params.append(organization_id)

        def query(conn: sqlite3.Connection) -> list[Reservation]:
            rows = conn.execute(
                f"SELECT * FROM reservations WHERE {' AND '.join(clauses)} ORDER BY created_at",
                params,
            ).fetchall()
            return [_row_to_reservation(row) for row in rows]

        return await self.db.run_read(query)

    # ------------------------------------------------------------------
    # Grants
    # ------------------------------------------------------------------

    def grant_in(
        self,
        conn: UnitOfWork,
        organization_id: str,
        amount: int,
        external_event_id: str,
        payment_id: str | None = None,
        event_type: str = "grant",
        amount_cents: int = 0,
        currency: str | None = None,
    ) -> GrantResult:
        """
        Credit an account exactly once per external event.

        Returns ALREADY_APPLIED without side effects when the event id, or an
        applied event for the same payment id, was seen before.

        Raises:
            ValueError: If amount < 1
            AccountNotFoundError: If the organization has no account
        """
        if amount < 1:
            raise ValueError(f"Grant amount must be positive, got {amount}")

        seen = self.payments.get_in(conn, external_event_id)
        if seen is None and payment_id:
            seen = self.payments.find_applied_payment_in(conn, payment_id)

        if seen is not None:
            logger.info(
                "Grant already applied",
                extra={
                    "organization_id": organization_id,
                    "external_event_id": external_event_id,
                    "payment_id": payment_id,
                    "original_event_id": seen.external_event_id,
                },
            )
            return GrantResult(
                outcome=GrantOutcome.ALREADY_APPLIED,
                organization_id=organization_id,
                external_event_id=external_event_id,
                amount=amount,
            )

        self._balance_in(conn, organization_id)

        self.payments.insert_in(
            conn,
            PaymentEvent(
                external_event_id=external_event_id,
                organization_id=organization_id,
                payment_id=payment_id,
                event_type=event_type,
                credits_granted=amount,
                amount_cents=amount_cents,
                currency=currency,
                status=PaymentEventStatus.APPLIED,
            ),
        )

        conn.execute(
            """
            UPDATE credit_accounts
            SET balance = balance + ?, updated_at = ?
            WHERE organization_id = ?
            """,
            (amount, utc_now_iso(), organization_id),
        )
        balance_after = self._balance_in(conn, organization_id)

        entry = self.recorder.record_in(
            conn,
            organization_id=organization_id,
            kind=LedgerEntryKind.GRANT,
            amount=amount,
            balance_after=balance_after,
            related_payment_id=payment_id or external_event_id,
        )

        conn.after_commit(
            lambda: logger.info(
                "Granted credits",
                extra={
                    "organization_id": organization_id,
                    "external_event_id": external_event_id,
                    "amount": amount,
                    "balance_after": balance_after,
                },
            )
        )

        return GrantResult(
            outcome=GrantOutcome.APPLIED,
            organization_id=organization_id,
            external_event_id=external_event_id,
            amount=amount,
            balance=balance_after,
            entry=entry,
        )

    async def grant(
        self,
        organization_id: str,
        amount: int,
        external_event_id: str,
        payment_id: str | None = None,
        event_type: str = "grant",
        amount_cents: int = 0,
        currency: str | None = None,
    ) -> GrantResult:
        return await self.db.run_in_transaction(
            self.grant_in,
            organization_id,
            amount,
            external_event_id,
            payment_id=payment_id,
            event_type=event_type,
            amount_cents=amount_cents,
            currency=currency,
        )

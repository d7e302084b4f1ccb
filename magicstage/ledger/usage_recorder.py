"""
Append-only audit trail of ledger mutations.

Every balance change writes exactly one ledger entry in the same unit of work
as the change itself, so the running sum of entry amounts equals the balance.
The schema rejects UPDATE and DELETE on entries; this module only inserts and
reads.
"""

import logging
import sqlite3

from magicstage.ledger.errors import AccountNotFoundError
from magicstage.models.ledger import LedgerEntry, LedgerEntryKind, ReconciliationReport
from magicstage.observability.metrics import set_reconciliation_drift, track_ledger_mutation
from magicstage.storage.database import LedgerDatabase, UnitOfWork, parse_timestamp, utc_now_iso

logger = logging.getLogger(__name__)


def _row_to_entry(row: sqlite3.Row) -> LedgerEntry:
    return LedgerEntry(
        entry_id=row["id"],
        organization_id=row["organization_id"],
        kind=LedgerEntryKind(row["kind"]),
        amount=row["amount"],
        balance_after=row["balance_after"],
        reservation_id=row["reservation_id"],
        related_job_id=row["related_job_id"],
        related_payment_id=row["related_payment_id"],
        created_at=parse_timestamp(row["created_at"]),
    )


class UsageRecorder:
    """
    Ledger entry writer and reader.

    Writes happen only through record_in, inside the caller's unit of work;
    the entry becomes visible exactly when the balance change commits.
    """

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def record_in(
        self,
        conn: UnitOfWork,
        organization_id: str,
        kind: LedgerEntryKind,
        amount: int,
        balance_after: int,
        reservation_id: str | None = None,
        related_job_id: str | None = None,
        related_payment_id: str | None = None,
    ) -> LedgerEntry:
        """
        Append one ledger entry.

        Args:
            conn: Open unit of work that also carries the balance change
            organization_id: Account the entry belongs to
            kind: Entry kind
            amount: Signed balance change (0 for commit)
            balance_after: Account balance once the change is applied

        Returns:
            LedgerEntry: The persisted entry
        """
        created_at = utc_now_iso()
        cursor = conn.execute(
            """
            INSERT INTO ledger_entries (
                organization_id, kind, amount, balance_after, reservation_id,
                related_job_id, related_payment_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                organization_id,
                kind.value,
                amount,
                balance_after,
                reservation_id,
                related_job_id,
                related_payment_id,
                created_at,
            ),
        )

        conn.after_commit(lambda: track_ledger_mutation(kind.value, amount))

        return LedgerEntry(
            entry_id=cursor.lastrowid,
            organization_id=organization_id,
            kind=kind,
            amount=amount,
            balance_after=balance_after,
            reservation_id=reservation_id,
            related_job_id=related_job_id,
            related_payment_id=related_payment_id,
            created_at=parse_timestamp(created_at),
        )

    async def list_entries(
        self,
        organization_id: str,
        limit: int = 100,
        offset: int = 0,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        """List an organization's entries in insertion order (or reversed)."""
        order = "DESC" if newest_first else "ASC"

        def query(conn: sqlite3.Connection) -> list[LedgerEntry]:
            rows = conn.execute(
                f"""
                SELECT * FROM ledger_entries
                WHERE organization_id = ?
                ORDER BY id {order}
                LIMIT ? OFFSET ?
                """,
                (organization_id, limit, offset),
            ).fetchall()
            return [_row_to_entry(row) for row in rows]

        return await self.db.run_read(query)

    async def entries_for_job(self, job_id: str) -> list[LedgerEntry]:
        def query(conn: sqlite3.Connection) -> list[LedgerEntry]:
            rows = conn.execute(
                "SELECT * FROM ledger_entries WHERE related_job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
            return [_row_to_entry(row) for row in rows]

        return await self.db.run_read(query)

    def reconcile_in(self, conn: sqlite3.Connection, organization_id: str) -> ReconciliationReport:
        """
        Compare the account balance with the sum of its entries.

        Raises:
            AccountNotFoundError: If the organization has no account
        """
        account = conn.execute(
            "SELECT balance FROM credit_accounts WHERE organization_id = ?",
            (organization_id,),
        ).fetchone()
        if account is None:
            raise AccountNotFoundError(organization_id)

        totals = conn.execute(
            """
            SELECT COALESCE(SUM(amount), 0) AS total, COUNT(*) AS entry_count
            FROM ledger_entries WHERE organization_id = ?
            """,
            (organization_id,),
        ).fetchone()
        held = conn.execute(
            """
            SELECT COUNT(*) AS held_count, COALESCE(SUM(amount), 0) AS held_credits
            FROM reservations WHERE organization_id = ? AND status = 'held'
            """,
            (organization_id,),
        ).fetchone()

        return ReconciliationReport(
            organization_id=organization_id,
            balance=account["balance"],
            entries_total=totals["total"],
            entry_count=totals["entry_count"],
            held_reservations=held["held_count"],
            held_credits=held["held_credits"],
        )

    async def reconcile(self, organization_id: str) -> ReconciliationReport:
        report = await self.db.run_read(self.reconcile_in, organization_id)
        self._report(report)
        return report

    async def reconcile_all(self) -> list[ReconciliationReport]:
        """Reconcile every account from one consistent snapshot."""

        def query(conn: sqlite3.Connection) -> list[ReconciliationReport]:
            organization_ids = [
                row["organization_id"]
                for row in conn.execute(
                    "SELECT organization_id FROM credit_accounts ORDER BY organization_id"
                )
            ]
            return [self.reconcile_in(conn, org_id) for org_id in organization_ids]

        reports = await self.db.run_read(query)
        for report in reports:
            self._report(report)
        return reports

    def _report(self, report: ReconciliationReport) -> None:
        set_reconciliation_drift(report.organization_id, report.drift)
        if not report.consistent:
            logger.error(
                "Ledger does not reconcile",
                extra={
                    "organization_id": report.organization_id,
                    "balance": report.balance,
                    "entries_total": report.entries_total,
                    "drift": report.drift,
                },
            )

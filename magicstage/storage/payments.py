"""
Payment event persistence.

The payment_events primary key (external_event_id) is the webhook
idempotency key; a partial unique index also keeps one applied row per
payment id.
"""

import sqlite3

from magicstage.models.payment import PaymentEvent, PaymentEventStatus
from magicstage.storage.database import LedgerDatabase, parse_timestamp, utc_now_iso


def _row_to_event(row: sqlite3.Row) -> PaymentEvent:
    return PaymentEvent(
        external_event_id=row["external_event_id"],
        organization_id=row["organization_id"],
        payment_id=row["payment_id"],
        event_type=row["event_type"],
        credits_granted=row["credits_granted"],
        amount_cents=row["amount_cents"],
        currency=row["currency"],
        status=PaymentEventStatus(row["status"]),
        reason=row["reason"],
        created_at=parse_timestamp(row["created_at"]),
    )


class PaymentEventRepository:
    """Payment event rows in the ledger database."""

    def __init__(self, db: LedgerDatabase):
        self.db = db

    def insert_in(self, conn: sqlite3.Connection, event: PaymentEvent) -> PaymentEvent:
        """
        Insert a payment event.

        Raises:
            ValueError: For DUPLICATE, which is an outcome and never a stored row
            sqlite3.IntegrityError: If the event id was already stored
        """
        if event.status == PaymentEventStatus.DUPLICATE:
            raise ValueError("Duplicate payment events are not persisted")

        conn.execute(
            """
            INSERT INTO payment_events (
                external_event_id, organization_id, payment_id, event_type,
                credits_granted, amount_cents, currency, status, reason, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.external_event_id,
                event.organization_id,
                event.payment_id,
                event.event_type,
                event.credits_granted,
                event.amount_cents,
                event.currency,
                event.status.value,
                event.reason,
                utc_now_iso(),
            ),
        )
        return event

    def get_in(self, conn: sqlite3.Connection, external_event_id: str) -> PaymentEvent | None:
        row = conn.execute(
            "SELECT * FROM payment_events WHERE external_event_id = ?", (external_event_id,)
        ).fetchone()
        return _row_to_event(row) if row else None

    def find_applied_payment_in(
        self, conn: sqlite3.Connection, payment_id: str
    ) -> PaymentEvent | None:
        row = conn.execute(
            "SELECT * FROM payment_events WHERE payment_id = ? AND status = 'applied'",
            (payment_id,),
        ).fetchone()
        return _row_to_event(row) if row else None

    async def get(self, external_event_id: str) -> PaymentEvent | None:
        return await self.db.run_read(self.get_in, external_event_id)

    async def list_for_organization(
        self, organization_id: str, limit: int = 50
    ) -> list[PaymentEvent]:
        def query(conn: sqlite3.Connection) -> list[PaymentEvent]:
            rows = conn.execute(
                """
                SELECT * FROM payment_events
                WHERE organization_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (organization_id, limit),
            ).fetchall()
            return [_row_to_event(row) for row in rows]

        return await self.db.run_read(query)

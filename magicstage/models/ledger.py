"""
Credit ledger data models.

A CreditAccount holds one organization's prepaid credit balance. Every change
to the balance is recorded as an immutable LedgerEntry, so the running sum of
entry amounts always equals the balance.
"""

import re
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field

ORGANIZATION_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_organization_id(v: str) -> str:
    """Organization IDs are opaque tokens (cuid, uuid or slug)."""
    v = v.strip()
    if not ORGANIZATION_ID_PATTERN.match(v):
        raise ValueError(
            "organization_id must be 1-64 characters of letters, digits, '-' or '_'"
        )
    return v


class LedgerEntryKind(str, Enum):
    """Kind of ledger mutation."""

    RESERVE = "reserve"  # -amount, credit held for in-flight work
    COMMIT = "commit"  # 0, reservation made final
    REFUND = "refund"  # +amount, reservation reversed
    GRANT = "grant"  # +amount, purchase or bonus


class ReservationStatus(str, Enum):
    """Lifecycle of a credit reservation."""

    HELD = "held"
    COMMITTED = "committed"
    REFUNDED = "refunded"


class CreditAccount(BaseModel):
    """Per-organization credit balance."""

    organization_id: str
    balance: int = Field(..., ge=0, description="Spendable credits")
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Reservation(BaseModel):
    """A provisional debit held against a balance while work is in flight."""

    reservation_id: str
    organization_id: str
    amount: int = Field(..., ge=1)
    status: ReservationStatus = Field(default=ReservationStatus.HELD)
    job_id: str | None = Field(default=None)
    created_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class LedgerEntry(BaseModel):
    """Immutable audit record of a single ledger mutation."""

    entry_id: int
    organization_id: str
    kind: LedgerEntryKind
    amount: int = Field(..., description="Signed balance change")
    balance_after: int = Field(..., ge=0)
    reservation_id: str | None = Field(default=None)
    related_job_id: str | None = Field(default=None)
    related_payment_id: str | None = Field(default=None)
    created_at: datetime


class GrantOutcome(str, Enum):
    """Result of a grant attempt."""

    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"


class GrantResult(BaseModel):
    """Outcome of CreditLedger.grant."""

    outcome: GrantOutcome
    organization_id: str
    external_event_id: str
    amount: int
    balance: int | None = Field(default=None, description="Balance after the grant, if applied")
    entry: LedgerEntry | None = Field(default=None)

    @property
    def applied(self) -> bool:
        return self.outcome == GrantOutcome.APPLIED


class ReconciliationReport(BaseModel):
    """Comparison of an account balance against its ledger entries."""

    organization_id: str
    balance: int
    entries_total: int
    entry_count: int
    held_reservations: int = Field(default=0, description="Reservations not yet committed/refunded")
    held_credits: int = Field(default=0)
    checked_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    @property
    def consistent(self) -> bool:
        return self.balance == self.entries_total and self.balance >= 0

    @property
    def drift(self) -> int:
        return self.balance - self.entries_total

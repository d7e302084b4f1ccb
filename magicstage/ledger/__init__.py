"""
Credit ledger.

CreditLedger is the only component allowed to change balances; UsageRecorder
keeps the append-only audit trail every change writes to.
"""

from magicstage.ledger.credit_ledger import CreditLedger
from magicstage.ledger.errors import (
    AccountNotFoundError,
    InsufficientCreditsError,
    LedgerError,
    LedgerInvariantViolation,
    ReservationNotFoundError,
)
from magicstage.ledger.usage_recorder import UsageRecorder

__all__ = [
    "AccountNotFoundError",
    "CreditLedger",
    "InsufficientCreditsError",
    "LedgerError",
    "LedgerInvariantViolation",
    "ReservationNotFoundError",
    "UsageRecorder",
]

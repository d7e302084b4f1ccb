"""
Storage layer for the credit ledger and staging jobs.

Uses SQLite in WAL mode with one connection per unit of work.
"""

from magicstage.storage.database import LedgerDatabase, StoreUnavailableError, UnitOfWork
from magicstage.storage.jobs import JobAlreadyFinalizedError, StagingJobRepository
from magicstage.storage.payments import PaymentEventRepository

__all__ = [
    "JobAlreadyFinalizedError",
    "LedgerDatabase",
    "PaymentEventRepository",
    "StagingJobRepository",
    "StoreUnavailableError",
    "UnitOfWork",
]

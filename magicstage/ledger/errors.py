"""Credit ledger exceptions."""

import logging

from magicstage.observability.metrics import track_invariant_violation

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for credit ledger errors."""

    pass


class InsufficientCreditsError(LedgerError):
    """Balance is lower than the requested reservation."""

    def __init__(self, organization_id: str, requested: int, available: int):
        self.organization_id = organization_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Organization {organization_id} has {available} credits, {requested} required"
        )


class AccountNotFoundError(LedgerError):
    """No credit account exists for the organization."""

    def __init__(self, organization_id: str):
        self.organization_id = organization_id
        super().__init__(f"No credit account for organization {organization_id}")


class ReservationNotFoundError(LedgerError):
    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} not found")


class LedgerInvariantViolation(LedgerError):
    """
    A ledger invariant would be broken (programming error or corrupted state).

    Logged at CRITICAL and counted when raised; surfaced to clients only as a
    generic internal error.
    """

    def __init__(self, operation: str, message: str, **context):
        self.operation = operation
        self.context = context
        super().__init__(message)

        logger.critical(
            f"Ledger invariant violation in {operation}: {message}",
            extra={"operation": operation, **context},
        )
        track_invariant_violation(operation)

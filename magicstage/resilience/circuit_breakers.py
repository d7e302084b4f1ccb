"""
Circuit breakers and retries for external dependencies.

Stripe calls go through a circuit breaker so a payment-provider outage fails
fast instead of tying up request workers.

Circuit breaker states:
- CLOSED: Normal operation, requests pass through
- OPEN: Failure threshold exceeded, requests fail immediately
- HALF_OPEN: Testing if service recovered, limited requests allowed

Transient ledger store errors (SQLITE_BUSY under write contention) are
retried with exponential backoff via with_retry.
"""

import logging

from pybreaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerListener
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


class StripeCircuitBreakerError(Exception):
    """Circuit breaker open for Stripe operations."""

    pass


def _on_circuit_open(breaker: CircuitBreaker) -> None:
    logger.error(
        f"Circuit breaker OPENED: {breaker.name}",
        extra={
            "breaker_name": breaker.name,
            "fail_count": breaker.fail_counter,
            "fail_max": breaker.fail_max,
            "state": "OPEN",
        },
    )


def _on_circuit_close(breaker: CircuitBreaker) -> None:
    logger.info(
        f"Circuit breaker CLOSED: {breaker.name} (service recovered)",
        extra={
            "breaker_name": breaker.name,
            "state": "CLOSED",
        },
    )


def _on_circuit_half_open(breaker: CircuitBreaker) -> None:
    logger.warning(
        f"Circuit breaker HALF-OPEN: {breaker.name} (testing recovery)",
        extra={
            "breaker_name": breaker.name,
            "state": "HALF_OPEN",
        },
    )


class _StateChangeListener(CircuitBreakerListener):
    """Routes breaker state changes to the log callbacks."""

    def state_change(self, cb, old_state, new_state):
        name = getattr(new_state, "name", str(new_state))
        if name == "open":
            _on_circuit_open(cb)
        elif name == "closed":
            _on_circuit_close(cb)
        elif name == "half-open":
            _on_circuit_half_open(cb)


# Stripe circuit breaker
# Opens after 3 consecutive failures, stays open for 30 seconds
stripe_breaker = CircuitBreaker(
    fail_max=3,
    reset_timeout=30,
    name="Stripe",
    listeners=[_StateChangeListener()],
)


def get_stripe_breaker() -> CircuitBreaker:
    """
    Get Stripe circuit breaker instance.

    Usage:
        breaker = get_stripe_breaker()
        intent = breaker.call(stripe.PaymentIntent.create, amount=4490, currency="usd")
    """
    return stripe_breaker


def reset_all_breakers() -> None:
    """
    Reset all circuit breakers to CLOSED state.

    Use for testing or manual recovery.
    """
    stripe_breaker.close()
    logger.info("All circuit breakers reset to CLOSED state")


def with_stripe_circuit_breaker(func):
    """
    Decorator to wrap synchronous Stripe operations with the circuit breaker.

    Raises:
        StripeCircuitBreakerError: If circuit is open

    Usage:
        @with_stripe_circuit_breaker
        def create_intent(...):
            return stripe.PaymentIntent.create(...)
    """

    def wrapper(*args, **kwargs):
        try:
            return stripe_breaker.call(func, *args, **kwargs)
        except CircuitBreakerError as e:
            logger.warning(
                "Stripe circuit breaker OPEN - failing fast",
                extra={
                    "function": func.__name__,
                    "state": stripe_breaker.current_state,
                },
            )
            raise StripeCircuitBreakerError(
                f"Stripe service unavailable (circuit breaker open). "
                f"Retry after {stripe_breaker.reset_timeout} seconds."
            ) from e

    wrapper.__name__ = func.__name__
    wrapper.__doc__ = func.__doc__
    return wrapper


def with_retry(
    max_attempts: int = 3,
    min_wait: float = 0.05,
    max_wait: float = 1.0,
    exceptions: tuple[type[Exception], ...] = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts
        min_wait: Minimum wait time in seconds
        max_wait: Maximum wait time in seconds
        exceptions: Exception types to retry on

    Returns:
        Retry decorator (works for sync and async callables)

    Usage:
        @with_retry(max_attempts=3, exceptions=(sqlite3.OperationalError,))
        def write_entry(...):
            ...
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(exceptions),
        reraise=True,
    )

"""
Observability middleware for automatic metric tracking.

Components:
- PrometheusMiddleware: Tracks all HTTP requests (latency, count, active)
- ErrorTrackingMiddleware: Captures and classifies unhandled errors
"""

import logging
import re
import time
from collections.abc import Callable

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

from magicstage.observability.metrics import (
    http_requests_active,
    track_error,
    track_request,
)

logger = logging.getLogger(__name__)

_ENDPOINT_PATTERNS = (
    (re.compile(r"/organizations/[^/]+"), "/organizations/{organization_id}"),
    (re.compile(r"/accounts/[^/]+"), "/accounts/{organization_id}"),
    (re.compile(r"/staging-jobs/job_[a-z0-9]+"), "/staging-jobs/{job_id}"),
)


def normalize_endpoint(path: str) -> str:
    """
    Normalize endpoint path for metric cardinality.

    Replaces organization and job identifiers with placeholders.

    Examples:
        /organizations/org-1/credits -> /organizations/{organization_id}/credits
        /staging-jobs/job_ab12 -> /staging-jobs/{job_id}
        /admin/staging-jobs/recover -> unchanged
    """
    for pattern, placeholder in _ENDPOINT_PATTERNS:
        path = pattern.sub(placeholder, path)
    return path


class PrometheusMiddleware(BaseHTTPMiddleware):
    """
    Middleware for automatic Prometheus metric tracking.

    Tracks:
    - Request latency (histogram)
    - Request count (counter)
    - Active requests (gauge)
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        endpoint = normalize_endpoint(request.url.path)
        method = request.method

        http_requests_active.labels(method=method, endpoint=endpoint).inc()

        start_time = time.perf_counter()
        status_code = 500

        try:
            response = await call_next(request)
            status_code = response.status_code

        except Exception as exc:
            logger.error(f"Request failed: {exc}", exc_info=True)
            raise

        finally:
            duration_seconds = time.perf_counter() - start_time

            http_requests_active.labels(method=method, endpoint=endpoint).dec()

            track_request(
                method=method,
                endpoint=endpoint,
                status_code=status_code,
                duration_seconds=duration_seconds,
            )

        return response


class ErrorTrackingMiddleware(BaseHTTPMiddleware):
    """
    Middleware for error classification and tracking.

    Classifies errors into categories:
    - validation: Pydantic validation errors
    - ledger: Ledger invariant or store failures
    - provider: AI provider failures that escaped the orchestrator
    - payment: Stripe and webhook errors
    - internal: Anything else
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        try:
            return await call_next(request)

        except Exception as exc:
            track_error(
                error_type=classify_error(exc),
                endpoint=normalize_endpoint(request.url.path),
            )
            raise


def classify_error(exc: Exception) -> str:
    """Classify an exception into a metric label."""
    exc_name = type(exc).__name__

    if "ValidationError" in exc_name or "ValueError" in exc_name:
        return "validation"

    if any(part in exc_name for part in ("Ledger", "Store", "Credits", "Account", "Reservation")):
        return "ledger"

    if "Provider" in exc_name:
        return "provider"

    if "Stripe" in exc_name or "Webhook" in exc_name or "Payment" in exc_name:
        return "payment"

    if "RateLimitExceeded" in exc_name:
        return "rate_limit"

    return "internal"

"""
Rate limiting configuration.

Uses slowapi with in-memory storage. Staging submissions are the only
endpoint that spends credits and starts AI work, so they carry their own
configurable limit; admin endpoints share a fixed one.

Usage:
    @router.post("/staging-jobs")
    @limiter.limit(staging_rate_limit)
    async def create_staging_job(request: Request, ...):
        ...
"""

import logging

from fastapi import Request
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.responses import Response

from magicstage.config import get_settings
from magicstage.observability.metrics import track_rate_limit_exceeded
from magicstage.observability.middleware import normalize_endpoint

logger = logging.getLogger(__name__)

ADMIN_RATE_LIMIT = "30/minute"


def get_rate_limit_key(request: Request) -> str:
    """
    Rate limit key for a request.

    Admin calls are keyed by their header so an operator behind a shared
    proxy is not throttled together with customer traffic.
    """
    if request.headers.get("x-admin-key"):
        return "admin"
    return get_remote_address(request)


def staging_rate_limit() -> str:
    """Limit for POST /staging-jobs (SERVICE_STAGING_RATE_LIMIT)."""
    return get_settings().service.staging_rate_limit


limiter = Limiter(key_func=get_rate_limit_key)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Count and log the rejection, then answer with slowapi's 429."""
    endpoint = normalize_endpoint(request.url.path)
    logger.warning(
        "Rate limit exceeded",
        extra={"endpoint": endpoint, "limit": str(exc.detail)},
    )
    track_rate_limit_exceeded(endpoint)
    return _rate_limit_exceeded_handler(request, exc)

"""
FastAPI dependencies for administrative authentication.

End-user authentication and sessions live in front of this service; the
only credential it checks itself is the operator key that protects account
opening, reconciliation and stale-job recovery.

Security:
- Constant-time comparison of the X-Admin-Key header
- Admin endpoints are disabled entirely when no key is configured
"""

import hmac
import logging

from fastapi import Header, HTTPException, status

from magicstage.config import get_settings

logger = logging.getLogger(__name__)


async def require_admin_key(
    x_admin_key: str | None = Header(default=None, alias="X-Admin-Key"),
) -> None:
    """
    Verify the X-Admin-Key header against ADMIN_API_KEY.

    Raises:
        HTTPException 503: No admin key configured (admin endpoints disabled)
        HTTPException 401: Header missing or wrong

    Usage:
        @router.post("/admin/accounts", dependencies=[Depends(require_admin_key)])
    """
    admin_key = get_settings().admin_api_key

    if not admin_key:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints disabled",
        )

    if not x_admin_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Admin-Key header",
        )

    if not hmac.compare_digest(x_admin_key.encode("utf-8"), admin_key.encode("utf-8")):
        logger.warning("Admin key validation failed")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin API key",
        )

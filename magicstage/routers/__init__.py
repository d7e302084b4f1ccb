"""
API routers for the Magic Staging credit service.

Routers:
- staging: Staging job submission and status
- webhooks: Stripe payment webhooks
- accounts: Balances, history, credit packages and payment intents
- admin: Account opening, reconciliation and stale-job recovery
"""

from magicstage.routers.accounts import router as accounts_router
from magicstage.routers.admin import router as admin_router
from magicstage.routers.staging import router as staging_router
from magicstage.routers.webhooks import router as webhooks_router

__all__ = ["accounts_router", "admin_router", "staging_router", "webhooks_router"]

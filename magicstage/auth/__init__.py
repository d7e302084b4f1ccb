"""
Authentication for administrative endpoints.
"""

from magicstage.auth.dependencies import require_admin_key

__all__ = ["require_admin_key"]

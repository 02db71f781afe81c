"""Shared API dependencies — single import point for all routers.

Re-exports database session and authentication dependencies so that router
modules can import everything they need from one place::

    from paygate.api.deps import get_db, get_current_user
"""

from paygate.auth.dependencies import ensure_self_or_admin, get_current_user
from paygate.database import get_db

__all__ = [
    "get_db",
    "get_current_user",
    "ensure_self_or_admin",
]

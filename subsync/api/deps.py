"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and entitlement dependencies so
that router modules can import everything they need from one place::

    from subsync.api.deps import get_db, get_current_active_user
"""

from subsync.auth.dependencies import (
    get_current_active_user,
    get_current_user,
)
from subsync.billing.entitlements import require_entitlement
from subsync.database import get_db, get_session_factory

__all__ = [
    "get_db",
    "get_session_factory",
    "get_current_user",
    "get_current_active_user",
    "require_entitlement",
]

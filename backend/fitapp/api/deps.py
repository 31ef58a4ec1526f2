"""Shared API dependencies — single import point for all routers.

Re-exports database session, readiness, and authentication dependencies so that
router modules can import everything they need from one place::

    from fitapp.api.deps import get_db, get_current_user
"""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from fitapp.auth.dependencies import get_current_user
from fitapp.billing.dependencies import require_active_subscription
from fitapp.database import get_db, require_database_ready


async def ensure_database_ready(db: AsyncSession = Depends(get_db)) -> None:
    """503 instead of a stack trace when the database is unreachable."""
    await require_database_ready(db)


__all__ = [
    "ensure_database_ready",
    "get_db",
    "get_current_user",
    "require_active_subscription",
]

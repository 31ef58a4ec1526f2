"""Subscription gating dependencies for premium routes."""

import logging

from fastapi import Depends

from fitapp.auth.dependencies import get_current_user
from fitapp.errors import AuthorizationError
from fitapp.models.user import User

logger = logging.getLogger(__name__)


async def require_active_subscription(user: User = Depends(get_current_user)) -> User:
    """Raise 403 unless the user currently holds an active subscription."""
    if not user.has_active_subscription():
        logger.info("User %s blocked from premium route (status=%s)", user.id, user.subscription_status)
        raise AuthorizationError(
            "An active subscription is required",
            code="SUBSCRIPTION_REQUIRED",
            details={
                "status": user.subscription_status or "free",
                "plan": user.subscription_plan or "free",
                "upgrade_url": "/api/v1/subscriptions/plans",
            },
        )
    return user

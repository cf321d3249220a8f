"""Entitlement reader — the single access-control check on subscription status."""

import logging

from fastapi import Depends, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.auth.dependencies import get_current_active_user
from subsync.billing.reconciliation import ENTITLED_STATUSES
from subsync.database import get_db
from subsync.models.subscription import Subscription
from subsync.models.user import User
from subsync.services.subscription_service import get_subscription_by_user_id

logger = logging.getLogger(__name__)

PRO_PLAN = "pro"
FREE_PLAN = "free"


def is_entitled_status(subscription_status: str | None) -> bool:
    """Only ``active`` and ``trialing`` grant paid features; every other value does not."""
    return subscription_status in ENTITLED_STATUSES


def effective_plan(subscription: Subscription | None) -> str:
    """Collapse a subscription row into the feature tier it grants."""
    if subscription is not None and is_entitled_status(subscription.status):
        return PRO_PLAN
    return FREE_PLAN


async def is_entitled(db: AsyncSession, user_id: str) -> bool:
    """Whether ``user_id`` may use paid features. Fails closed on store errors."""
    try:
        subscription = await get_subscription_by_user_id(db, user_id)
    except SQLAlchemyError:
        logger.exception("Entitlement lookup failed for user %s, denying", user_id)
        return False
    return subscription is not None and is_entitled_status(subscription.status)


async def require_entitlement(
    db: AsyncSession = Depends(get_db),
    user: User = Depends(get_current_active_user),
) -> None:
    """Raise 402 unless the current user holds an entitled subscription."""
    if not await is_entitled(db, user.id):
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail={
                "message": "This feature requires an active Pro subscription.",
                "plan": FREE_PLAN,
                "upgrade_url": "/api/v1/billing/checkout",
            },
        )

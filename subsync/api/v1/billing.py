"""Billing API endpoints — subscription state, entitlement, Stripe Checkout, and Customer Portal."""

import logging

import stripe
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.api.deps import get_current_active_user, get_db
from subsync.billing.entitlements import effective_plan, is_entitled_status
from subsync.billing.plans import PLANS, SUPPORTED_CURRENCIES, get_plan
from subsync.billing.stripe_client import (
    create_checkout_session,
    create_portal_session,
)
from subsync.config import settings
from subsync.models.user import User
from subsync.schemas.billing import (
    CheckoutRequest,
    CheckoutResponse,
    EntitlementResponse,
    PlanResponse,
    PlansListResponse,
    PortalRequest,
    PortalResponse,
    SubscriptionResponse,
)
from subsync.services.subscription_service import (
    ensure_stripe_customer,
    get_subscription_by_user_id,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/billing", tags=["billing"])


@router.get("/plans", response_model=PlansListResponse)
async def list_plans() -> PlansListResponse:
    """List purchasable plans (public — no auth required)."""
    return PlansListResponse(
        plans=[
            PlanResponse(
                name=p.name,
                display_name=p.display_name,
                interval=p.interval,
                price_cents=p.price_cents,
            )
            for p in PLANS.values()
        ]
    )


@router.get("/subscription", response_model=SubscriptionResponse)
async def get_subscription(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> SubscriptionResponse:
    """Get the current user's mirrored subscription. No row means the free plan."""
    subscription = await get_subscription_by_user_id(db, current_user.id)
    if subscription is None:
        return SubscriptionResponse(
            entitled=False,
            plan=effective_plan(None),
            plan_type=None,
            status=None,
            currency=None,
            stripe_subscription_id=None,
            current_period_start=None,
            current_period_end=None,
            cancel_at_period_end=False,
            canceled_at=None,
        )

    return SubscriptionResponse(
        entitled=is_entitled_status(subscription.status),
        plan=effective_plan(subscription),
        plan_type=subscription.plan_type,
        status=subscription.status,
        currency=subscription.currency,
        stripe_subscription_id=subscription.stripe_subscription_id,
        current_period_start=subscription.current_period_start,
        current_period_end=subscription.current_period_end,
        cancel_at_period_end=subscription.cancel_at_period_end,
        canceled_at=subscription.canceled_at,
    )


@router.get("/entitlement", response_model=EntitlementResponse)
async def get_entitlement(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> EntitlementResponse:
    """Whether the current user may use paid features."""
    subscription = await get_subscription_by_user_id(db, current_user.id)
    return EntitlementResponse(
        entitled=subscription is not None and is_entitled_status(subscription.status),
        plan=effective_plan(subscription),
        status=subscription.status if subscription else None,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    body: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> CheckoutResponse:
    """Create a Stripe Checkout session for a plan purchase."""
    plan = get_plan(body.plan_type)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid plan. Choose 'monthly', 'annual' or 'lifetime'.",
        )

    currency = (body.currency or settings.default_currency).upper()
    if currency not in SUPPORTED_CURRENCIES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid currency. Choose one of {', '.join(SUPPORTED_CURRENCIES)}.",
        )

    price_id = plan.stripe_price_ids.get(currency)
    if not price_id:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Stripe price ID not configured for plan.",
        )

    success_url = (
        body.success_url
        or f"{settings.frontend_url}/app?session_id={{CHECKOUT_SESSION_ID}}&status=success"
    )
    cancel_url = body.cancel_url or f"{settings.frontend_url}/app?status=cancelled"

    try:
        customer_id = await ensure_stripe_customer(db, current_user, plan.name, currency)
        session = await create_checkout_session(
            customer_id=customer_id,
            price_id=price_id,
            mode=plan.checkout_mode,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={
                "user_id": current_user.id,
                "plan_type": plan.name,
                "currency": currency,
            },
        )
    except stripe.StripeError as e:
        logger.error("Stripe checkout error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        ) from e

    await db.commit()

    return CheckoutResponse(
        checkout_url=session.url,
        session_id=session.id,
    )


@router.post("/portal", response_model=PortalResponse)
async def create_portal(
    body: PortalRequest,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_active_user),
) -> PortalResponse:
    """Create a Stripe Customer Portal session for subscription management."""
    subscription = await get_subscription_by_user_id(db, current_user.id)

    if subscription is None or not subscription.stripe_customer_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No Stripe customer found. Subscribe first.",
        )

    return_url = body.return_url or f"{settings.frontend_url}/app"

    try:
        session = await create_portal_session(
            customer_id=subscription.stripe_customer_id,
            return_url=return_url,
        )
    except stripe.StripeError as e:
        logger.error("Stripe portal error: %s", e)
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(e),
        ) from e

    return PortalResponse(portal_url=session.url)

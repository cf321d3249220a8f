"""Stripe webhook event handlers — decode verified events into observations and apply them."""

import logging
from datetime import datetime, timezone
from typing import Any

import stripe
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.billing.plans import LIFETIME_PERIOD_END, PlanType, resolve_plan_type
from subsync.billing.reconciliation import (
    MalformedObservationError,
    ObservationKind,
    RemoteObservation,
    SubscriptionStatus,
    apply_remote_observation,
)
from subsync.billing.stripe_client import get_checkout_price_id, get_subscription
from subsync.config import settings
from subsync.database import naive_utc

logger = logging.getLogger(__name__)

# A completed checkout means the payment went through even if the
# subscription object has not caught up yet.
_PENDING_STATUSES = {
    SubscriptionStatus.INCOMPLETE.value,
    SubscriptionStatus.INCOMPLETE_EXPIRED.value,
}


def _ts_to_naive(ts: int | None) -> datetime | None:
    """Convert Stripe Unix timestamp to naive UTC datetime."""
    if ts is None or not isinstance(ts, (int, float)):
        return None
    return naive_utc(datetime.fromtimestamp(ts, tz=timezone.utc))


def _object_id(value: Any) -> str | None:
    """Return the ID of a Stripe reference that may be a bare ID or an expanded object."""
    if value is None or isinstance(value, str):
        return value
    return getattr(value, "id", None)


def _metadata(obj: Any) -> dict[str, str]:
    metadata = getattr(obj, "metadata", None)
    return dict(metadata) if metadata else {}


def _get_first_item(stripe_sub: stripe.Subscription):
    """Get the first subscription item, using bracket notation to avoid
    collision with Python dict .items() in newer Stripe API versions.
    """
    sub_items = stripe_sub["items"]
    if sub_items and sub_items.data:
        return sub_items.data[0]
    return None


def _get_price_id_from_subscription(stripe_sub: stripe.Subscription) -> str | None:
    """Extract the first price ID from a Stripe subscription's items."""
    item = _get_first_item(stripe_sub)
    return item.price.id if item else None


def _get_period(stripe_sub: stripe.Subscription) -> tuple[datetime | None, datetime | None]:
    """Extract current period start/end.

    In Stripe API 2025-08-27 (basil), current_period_start/end moved
    from the subscription object to the subscription item; older API
    versions still carry them on the subscription.
    """
    item = _get_first_item(stripe_sub)
    start = getattr(item, "current_period_start", None) if item else None
    end = getattr(item, "current_period_end", None) if item else None
    if start is None:
        start = getattr(stripe_sub, "current_period_start", None)
    if end is None:
        end = getattr(stripe_sub, "current_period_end", None)
    return _ts_to_naive(start), _ts_to_naive(end)


def _observed_at(event: stripe.Event) -> datetime | None:
    return _ts_to_naive(getattr(event, "created", None))


async def observation_from_checkout_session(
    session: stripe.checkout.Session, observed_at: datetime | None = None
) -> RemoteObservation | None:
    """Decode a completed Checkout Session.

    Subscription-mode sessions are completed with the subscription fetched
    from Stripe; one-time sessions are lifetime purchases priced from their
    line items. Returns None when no price can be resolved; such a session
    is acknowledged without a write.
    """
    metadata = _metadata(session)
    user_id = metadata.get("user_id") or getattr(session, "client_reference_id", None)
    if not user_id:
        raise MalformedObservationError(f"Checkout session {session.id} has no user_id metadata")

    customer_id = _object_id(session.customer)
    subscription_id = _object_id(session.subscription)
    currency = metadata.get("currency") or settings.default_currency

    if subscription_id:
        stripe_sub = await get_subscription(subscription_id)
        price_id = _get_price_id_from_subscription(stripe_sub)
        status = stripe_sub.status
        if status in _PENDING_STATUSES:
            logger.info(
                "Subscription %s is %s but checkout %s completed, recording as active",
                subscription_id,
                status,
                session.id,
            )
            status = SubscriptionStatus.ACTIVE.value
        period_start, period_end = _get_period(stripe_sub)
        plan_type = resolve_plan_type(price_id, metadata.get("plan_type"))
    else:
        price_id = await get_checkout_price_id(session.id)
        status = SubscriptionStatus.ACTIVE.value
        period_start, period_end = None, LIFETIME_PERIOD_END
        plan_type = PlanType.LIFETIME.value

    if not price_id:
        logger.warning("No price found for checkout session %s, skipping", session.id)
        return None

    return RemoteObservation(
        kind=ObservationKind.CHECKOUT_COMPLETED,
        stripe_customer_id=customer_id,
        user_id=user_id,
        stripe_subscription_id=subscription_id,
        stripe_price_id=price_id,
        plan_type=plan_type,
        currency=currency.upper(),
        status=status,
        current_period_start=period_start,
        current_period_end=period_end,
        observed_at=observed_at,
    )


def observation_from_subscription(
    stripe_sub: stripe.Subscription, observed_at: datetime | None = None
) -> RemoteObservation:
    """Decode a subscription object (created/updated events and direct lookups)."""
    customer_id = _object_id(stripe_sub.customer)
    if not customer_id:
        raise MalformedObservationError(f"Subscription {stripe_sub.id} has no customer")

    price_id = _get_price_id_from_subscription(stripe_sub)
    period_start, period_end = _get_period(stripe_sub)
    return RemoteObservation(
        kind=ObservationKind.SUBSCRIPTION_UPDATED,
        stripe_customer_id=customer_id,
        stripe_subscription_id=stripe_sub.id,
        stripe_price_id=price_id,
        plan_type=resolve_plan_type(price_id, _metadata(stripe_sub).get("plan_type")),
        status=stripe_sub.status,
        current_period_start=period_start,
        current_period_end=period_end,
        cancel_at_period_end=bool(getattr(stripe_sub, "cancel_at_period_end", False)),
        canceled_at=_ts_to_naive(getattr(stripe_sub, "canceled_at", None)),
        observed_at=observed_at,
    )


def observation_from_deleted_subscription(
    stripe_sub: stripe.Subscription, observed_at: datetime | None = None
) -> RemoteObservation:
    customer_id = _object_id(stripe_sub.customer)
    if not customer_id:
        raise MalformedObservationError(f"Deleted subscription {stripe_sub.id} has no customer")
    return RemoteObservation(
        kind=ObservationKind.SUBSCRIPTION_DELETED,
        stripe_customer_id=customer_id,
        stripe_subscription_id=stripe_sub.id,
        canceled_at=_ts_to_naive(getattr(stripe_sub, "canceled_at", None)),
        observed_at=observed_at,
    )


def observation_from_payment_intent(
    payment_intent: stripe.PaymentIntent, observed_at: datetime | None = None
) -> RemoteObservation | None:
    """Decode a one-time payment; returns None unless it is a lifetime purchase."""
    customer_id = _object_id(getattr(payment_intent, "customer", None))
    if not customer_id:
        logger.info("Payment intent %s has no customer, skipping", payment_intent.id)
        return None
    if getattr(payment_intent, "invoice", None):
        logger.info("Payment intent %s pays a subscription invoice, skipping", payment_intent.id)
        return None
    # Newer API versions drop ``invoice`` from payment intents; lifetime checkouts stamp the plan.
    if _metadata(payment_intent).get("plan_type") != PlanType.LIFETIME.value:
        logger.info("Payment intent %s is not a lifetime purchase, skipping", payment_intent.id)
        return None
    return RemoteObservation(
        kind=ObservationKind.PAYMENT_SUCCEEDED,
        stripe_customer_id=customer_id,
        observed_at=observed_at,
    )


async def handle_checkout_session_completed(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle checkout.session.completed — create or overwrite the buyer's row."""
    session = event.data.object
    observation = await observation_from_checkout_session(session, _observed_at(event))
    if observation is None:
        return
    await apply_remote_observation(db, observation)
    logger.info(
        "Checkout completed for user %s: plan=%s, status=%s",
        observation.user_id,
        observation.plan_type,
        observation.status,
    )


async def handle_subscription_updated(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle customer.subscription.created/updated — mirror plan, status, and period."""
    stripe_sub = event.data.object
    observation = observation_from_subscription(stripe_sub, _observed_at(event))
    await apply_remote_observation(db, observation)


async def handle_subscription_deleted(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle customer.subscription.deleted — record the cancellation."""
    stripe_sub = event.data.object
    observation = observation_from_deleted_subscription(stripe_sub, _observed_at(event))
    await apply_remote_observation(db, observation)


async def handle_payment_succeeded(
    db: AsyncSession, event: stripe.Event
) -> None:
    """Handle payment_intent.succeeded — activate a lifetime purchase for a known customer."""
    observation = observation_from_payment_intent(event.data.object, _observed_at(event))
    if observation is None:
        return
    await apply_remote_observation(db, observation)

"""Reconciliation engine — project remote Stripe state onto the local subscription row.

The engine never decides a status on its own: it mirrors whatever the provider
last reported. Writes overwrite the mirrored fields wholesale, so applying the
same observation twice yields the same row. Deliveries are not ordered, so a
late, older observation can regress the row until the next event or audit.
"""

import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from subsync.billing.plans import LIFETIME_PERIOD_END, PlanType
from subsync.database import naive_utc
from subsync.models.subscription import Subscription
from subsync.services.subscription_service import (
    get_subscription_by_stripe_customer,
    get_subscription_by_user_id,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


class SubscriptionStatus(str, enum.Enum):
    """Local mirror of the Stripe subscription lifecycle."""

    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    ACTIVE = "active"
    TRIALING = "trialing"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


KNOWN_STATUSES: frozenset[str] = frozenset(s.value for s in SubscriptionStatus)
ENTITLED_STATUSES: frozenset[str] = frozenset(
    {SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value}
)


class ObservationKind(str, enum.Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_SUCCEEDED = "payment_succeeded"


class MalformedObservationError(ValueError):
    """The observation lacks a field its kind requires."""


@dataclass(frozen=True)
class RemoteObservation:
    """Normalized description of remote state, decoded from a webhook or a direct lookup."""

    kind: ObservationKind
    stripe_customer_id: str | None = None
    user_id: str | None = None
    stripe_subscription_id: str | None = None
    stripe_price_id: str | None = None
    plan_type: str | None = None
    currency: str | None = None
    status: str | None = None
    current_period_start: datetime | None = None
    current_period_end: datetime | None = None
    cancel_at_period_end: bool = False
    canceled_at: datetime | None = None
    observed_at: datetime | None = field(default=None, compare=False)


def normalize_status(raw: str | None) -> str:
    """Map a remote status onto the local enum; anything unknown becomes ``canceled``."""
    if raw in KNOWN_STATUSES:
        return raw
    logger.warning("Unknown remote subscription status %r, treating as canceled", raw)
    return SubscriptionStatus.CANCELED.value


def _validate(observation: RemoteObservation) -> None:
    kind = observation.kind
    if kind is ObservationKind.CHECKOUT_COMPLETED:
        if not observation.user_id:
            raise MalformedObservationError("checkout completion requires user_id")
        if not observation.status:
            raise MalformedObservationError("checkout completion requires status")
    elif kind is ObservationKind.SUBSCRIPTION_UPDATED:
        if not observation.stripe_customer_id and not observation.user_id:
            raise MalformedObservationError("subscription update requires a customer or user id")
        if not observation.stripe_subscription_id or not observation.status:
            raise MalformedObservationError("subscription update requires subscription id and status")
    elif not observation.stripe_customer_id and not observation.user_id:
        raise MalformedObservationError(f"{kind.value} requires a customer or user id")


def _fields_for(observation: RemoteObservation) -> dict[str, Any]:
    """Build the overwrite set carried by an observation of the given kind."""
    kind = observation.kind

    if kind is ObservationKind.CHECKOUT_COMPLETED:
        fields: dict[str, Any] = {
            "stripe_customer_id": observation.stripe_customer_id,
            "stripe_subscription_id": observation.stripe_subscription_id,
            "stripe_price_id": observation.stripe_price_id,
            "plan_type": observation.plan_type or PlanType.MONTHLY.value,
            "status": normalize_status(observation.status),
            "current_period_start": observation.current_period_start,
            "current_period_end": observation.current_period_end,
            "cancel_at_period_end": False,
            "canceled_at": None,
        }
        if observation.currency:
            fields["currency"] = observation.currency
        return fields

    if kind is ObservationKind.SUBSCRIPTION_UPDATED:
        fields = {
            "stripe_subscription_id": observation.stripe_subscription_id,
            "stripe_price_id": observation.stripe_price_id,
            "status": normalize_status(observation.status),
            "current_period_start": observation.current_period_start,
            "current_period_end": observation.current_period_end,
            "cancel_at_period_end": observation.cancel_at_period_end,
            "canceled_at": observation.canceled_at,
        }
        if observation.plan_type:
            fields["plan_type"] = observation.plan_type
        return fields

    if kind is ObservationKind.SUBSCRIPTION_DELETED:
        fields = {
            "status": SubscriptionStatus.CANCELED.value,
            "cancel_at_period_end": False,
        }
        canceled_at = observation.canceled_at or observation.observed_at
        if canceled_at is not None:
            fields["canceled_at"] = canceled_at
        return fields

    # Lifetime purchases are backed by a payment, not a subscription object.
    return {
        "status": SubscriptionStatus.ACTIVE.value,
        "plan_type": PlanType.LIFETIME.value,
        "current_period_end": LIFETIME_PERIOD_END,
    }


def _enforce_backing_invariant(
    fields: dict[str, Any], existing: Subscription | None
) -> None:
    """A non-lifetime row may only claim entitlement with a remote subscription id."""

    def resulting(name: str) -> Any:
        if name in fields:
            return fields[name]
        return getattr(existing, name, None) if existing is not None else None

    if (
        resulting("status") in ENTITLED_STATUSES
        and not resulting("stripe_subscription_id")
        and resulting("plan_type") != PlanType.LIFETIME.value
    ):
        logger.warning(
            "Entitled %s plan without a Stripe subscription id, recording as canceled",
            resulting("plan_type"),
        )
        fields["status"] = SubscriptionStatus.CANCELED.value


async def _find_local_row(
    db: AsyncSession, observation: RemoteObservation
) -> Subscription | None:
    subscription = None
    if observation.stripe_customer_id:
        subscription = await get_subscription_by_stripe_customer(db, observation.stripe_customer_id)
    if subscription is None and observation.user_id:
        subscription = await get_subscription_by_user_id(db, observation.user_id)
    return subscription


async def apply_remote_observation(
    db: AsyncSession, observation: RemoteObservation
) -> Subscription | None:
    """Apply an observation to the local store.

    Returns the written row, or ``None`` when the observation refers to no
    local row and its kind may not create one (an orphan event). Raises
    :class:`MalformedObservationError` for unusable shapes; database errors
    propagate.
    """
    _validate(observation)

    existing = await _find_local_row(db, observation)

    if observation.kind is ObservationKind.CHECKOUT_COMPLETED:
        user_id = observation.user_id
        if existing is not None and existing.user_id != user_id:
            # The checkout metadata names the owner; the customer moves to the buyer.
            logger.warning(
                "Stripe customer %s moves from user %s to user %s at checkout",
                observation.stripe_customer_id,
                existing.user_id,
                user_id,
            )
            await upsert_subscription(db, existing.user_id, {"stripe_customer_id": None})
            existing = await get_subscription_by_user_id(db, user_id)
    elif existing is None:
        logger.warning(
            "Orphan %s observation for customer %s (user %s), no local subscription",
            observation.kind.value,
            observation.stripe_customer_id,
            observation.user_id,
        )
        return None
    else:
        user_id = existing.user_id

    fields = _fields_for(observation)
    if "canceled_at" not in fields and observation.kind is ObservationKind.SUBSCRIPTION_DELETED:
        # Without a remote timestamp a repeated deletion keeps the first recorded time.
        fields["canceled_at"] = existing.canceled_at or naive_utc()
    _enforce_backing_invariant(fields, existing)

    subscription = await upsert_subscription(db, user_id, fields)
    logger.info(
        "Applied %s for user %s: status=%s plan_type=%s",
        observation.kind.value,
        user_id,
        subscription.status,
        subscription.plan_type,
    )
    return subscription

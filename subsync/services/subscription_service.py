"""Subscription service — the local subscription store.

Every write goes through :func:`upsert_subscription`, a single
``INSERT ... ON CONFLICT (user_id) DO UPDATE`` statement, so concurrent writers
for the same user are serialized by the database and the last write wins.
"""

import logging
from collections.abc import Iterable, Mapping
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.billing.stripe_client import create_customer
from subsync.models.subscription import Subscription
from subsync.models.user import User

logger = logging.getLogger(__name__)

# Columns a reconciliation write may set. ``user_id`` is the conflict key and never changes.
MIRRORED_FIELDS: frozenset[str] = frozenset(
    {
        "stripe_customer_id",
        "stripe_subscription_id",
        "stripe_price_id",
        "plan_type",
        "currency",
        "status",
        "current_period_start",
        "current_period_end",
        "cancel_at_period_end",
        "canceled_at",
    }
)

_INSERT_BY_DIALECT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


async def get_subscription_by_user_id(
    db: AsyncSession, user_id: str
) -> Subscription | None:
    """Look up the subscription row owned by a local user."""
    result = await db.execute(
        select(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def get_subscription_by_stripe_customer(
    db: AsyncSession, stripe_customer_id: str
) -> Subscription | None:
    """Look up subscription by Stripe customer ID (used by webhooks)."""
    result = await db.execute(
        select(Subscription).where(
            Subscription.stripe_customer_id == stripe_customer_id
        )
    )
    return result.scalar_one_or_none()


async def list_subscriptions_by_status(
    db: AsyncSession, statuses: Iterable[str]
) -> list[Subscription]:
    """Return every row whose status is in ``statuses``, oldest update first."""
    result = await db.execute(
        select(Subscription)
        .where(Subscription.status.in_(list(statuses)))
        .order_by(Subscription.updated_at, Subscription.user_id)
    )
    return list(result.scalars().all())


async def upsert_subscription(
    db: AsyncSession, user_id: str, fields: Mapping[str, Any]
) -> Subscription:
    """Atomically create or overwrite the row for ``user_id``.

    Only the given fields are written on conflict; ``updated_at`` is always
    refreshed. Raises ``ValueError`` for fields outside the mirrored set and
    lets database errors propagate.
    """
    unknown = set(fields) - MIRRORED_FIELDS
    if unknown:
        raise ValueError(f"Cannot write subscription fields: {sorted(unknown)}")

    dialect = db.get_bind().dialect.name
    insert = _INSERT_BY_DIALECT.get(dialect)
    if insert is None:
        raise RuntimeError(f"Upsert is not supported on the {dialect!r} dialect")

    values = dict(fields)
    stmt = insert(Subscription).values(user_id=user_id, **values)
    stmt = stmt.on_conflict_do_update(
        index_elements=[Subscription.user_id],
        set_={**values, "updated_at": func.now()},
    ).returning(Subscription)

    result = await db.scalars(stmt, execution_options={"populate_existing": True})
    subscription = result.one()
    logger.info(
        "Upserted subscription for user %s: %s",
        user_id,
        ", ".join(f"{key}={value}" for key, value in sorted(values.items())),
    )
    return subscription


async def get_user_by_id(db: AsyncSession, user_id: str) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    result = await db.execute(
        select(User).where(func.lower(User.email) == email.strip().lower())
    )
    return result.scalar_one_or_none()


async def ensure_stripe_customer(
    db: AsyncSession, user: User, plan_type: str, currency: str
) -> str:
    """Ensure the user has a Stripe customer ID. Create one if missing.

    A newly created customer is recorded on an ``incomplete`` placeholder row
    until checkout completion confirms the payment.
    """
    subscription = await get_subscription_by_user_id(db, user.id)
    if subscription is not None and subscription.stripe_customer_id:
        return subscription.stripe_customer_id

    customer = await create_customer(email=user.email, user_id=user.id, name=user.name)
    fields: dict[str, Any] = {"stripe_customer_id": customer.id}
    if subscription is None:
        fields.update(plan_type=plan_type, currency=currency, status="incomplete")
    await upsert_subscription(db, user.id, fields)
    logger.info("Linked Stripe customer %s to user %s", customer.id, user.id)
    return customer.id

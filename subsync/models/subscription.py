"""Subscription model — mirrored Stripe billing state per user."""

from datetime import datetime

from sqlalchemy import Boolean, String, false
from sqlalchemy.orm import Mapped, mapped_column

from subsync.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One row per user mirroring the remote subscription; no row means the free plan."""

    __tablename__ = "subscriptions"

    # Owning key; UNIQUE gives one row per user and is the upsert conflict target
    user_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)

    # Stripe identifiers; a customer belongs to at most one user
    stripe_customer_id: Mapped[str | None] = mapped_column(
        String(255), unique=True, nullable=True, index=True
    )
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Plan & status
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False, server_default="monthly")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, server_default="BRL")
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, server_default="incomplete", index=True
    )

    # Billing period
    current_period_start: Mapped[datetime | None] = mapped_column(nullable=True)
    current_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    cancel_at_period_end: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default=false()
    )
    canceled_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return (
            f"<Subscription(id={self.id}, user_id={self.user_id}, "
            f"plan_type={self.plan_type}, status={self.status})>"
        )

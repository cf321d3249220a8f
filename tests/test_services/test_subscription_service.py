"""Tests for the local subscription store (get/upsert/list and customer linking)."""

from datetime import datetime
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subsync.models.subscription import Subscription
from subsync.models.user import User
from subsync.services.subscription_service import (
    ensure_stripe_customer,
    get_subscription_by_stripe_customer,
    get_subscription_by_user_id,
    get_user_by_email,
    get_user_by_id,
    list_subscriptions_by_status,
    upsert_subscription,
)


async def _count_rows(db_session: AsyncSession, user_id: str) -> int:
    result = await db_session.execute(
        select(func.count()).select_from(Subscription).where(Subscription.user_id == user_id)
    )
    return result.scalar_one()


class TestUpsertSubscription:
    """upsert_subscription creates or overwrites exactly one row per user."""

    @pytest.mark.asyncio
    async def test_creates_row_with_defaults(self, db_session: AsyncSession):
        """A first write inserts the row and server defaults fill the rest."""
        sub = await upsert_subscription(
            db_session, "user_a", {"stripe_customer_id": "cus_a", "status": "active"}
        )

        assert sub.user_id == "user_a"
        assert sub.stripe_customer_id == "cus_a"
        assert sub.status == "active"
        assert sub.plan_type == "monthly"
        assert sub.currency == "BRL"
        assert sub.cancel_at_period_end is False
        assert sub.id is not None

    @pytest.mark.asyncio
    async def test_overwrites_only_given_fields(self, db_session: AsyncSession):
        """A second write changes the named fields and keeps the others."""
        await upsert_subscription(
            db_session,
            "user_b",
            {
                "stripe_customer_id": "cus_b",
                "stripe_subscription_id": "sub_b",
                "status": "active",
                "plan_type": "annual",
            },
        )
        sub = await upsert_subscription(db_session, "user_b", {"status": "past_due"})

        assert sub.status == "past_due"
        assert sub.plan_type == "annual"
        assert sub.stripe_subscription_id == "sub_b"
        assert await _count_rows(db_session, "user_b") == 1

    @pytest.mark.asyncio
    async def test_identity_map_sees_the_write(self, db_session: AsyncSession):
        """A row already loaded in the session reflects the upserted values."""
        await upsert_subscription(db_session, "user_c", {"status": "active"})
        loaded = await get_subscription_by_user_id(db_session, "user_c")

        await upsert_subscription(db_session, "user_c", {"status": "canceled"})

        assert loaded.status == "canceled"

    @pytest.mark.asyncio
    async def test_same_write_twice_is_idempotent(self, db_session: AsyncSession):
        """Applying identical fields twice leaves identical mirrored values."""
        fields = {
            "stripe_customer_id": "cus_d",
            "stripe_subscription_id": "sub_d",
            "status": "trialing",
            "current_period_end": datetime(2030, 1, 1),
        }
        first = await upsert_subscription(db_session, "user_d", fields)
        snapshot = {key: getattr(first, key) for key in fields}

        second = await upsert_subscription(db_session, "user_d", fields)

        assert {key: getattr(second, key) for key in fields} == snapshot
        assert await _count_rows(db_session, "user_d") == 1

    @pytest.mark.asyncio
    async def test_rejects_unknown_fields(self, db_session: AsyncSession):
        """Fields outside the mirrored set are refused before touching the DB."""
        with pytest.raises(ValueError, match="user_id"):
            await upsert_subscription(db_session, "user_e", {"user_id": "someone_else"})

    @pytest.mark.asyncio
    async def test_customer_id_belongs_to_one_user(self, db_session: AsyncSession):
        """A second user cannot claim a customer id that is already linked."""
        await upsert_subscription(db_session, "user_g", {"stripe_customer_id": "cus_shared"})

        with pytest.raises(IntegrityError):
            await upsert_subscription(db_session, "user_h", {"stripe_customer_id": "cus_shared"})
        await db_session.rollback()


class TestLookups:
    """Row and user lookups."""

    @pytest.mark.asyncio
    async def test_get_by_user_id_missing(self, db_session: AsyncSession):
        """Unknown user has no row (free plan)."""
        assert await get_subscription_by_user_id(db_session, "nobody") is None

    @pytest.mark.asyncio
    async def test_get_by_stripe_customer(self, db_session: AsyncSession):
        """Rows are found by their Stripe customer id."""
        await upsert_subscription(db_session, "user_f", {"stripe_customer_id": "cus_f"})

        sub = await get_subscription_by_stripe_customer(db_session, "cus_f")

        assert sub is not None
        assert sub.user_id == "user_f"
        assert await get_subscription_by_stripe_customer(db_session, "cus_missing") is None

    @pytest.mark.asyncio
    async def test_list_by_status(self, db_session: AsyncSession):
        """Only rows whose status is in the requested set are listed."""
        await upsert_subscription(db_session, "user_g1", {"status": "active"})
        await upsert_subscription(db_session, "user_g2", {"status": "trialing"})
        await upsert_subscription(db_session, "user_g3", {"status": "canceled"})

        rows = await list_subscriptions_by_status(db_session, {"active", "trialing"})

        assert {row.user_id for row in rows} == {"user_g1", "user_g2"}

    @pytest.mark.asyncio
    async def test_get_user_by_email_is_case_insensitive(
        self, db_session: AsyncSession, test_user: User
    ):
        """E-mail lookup ignores case and surrounding whitespace."""
        found = await get_user_by_email(db_session, f"  {test_user.email.upper()} ")

        assert found is not None
        assert found.id == test_user.id
        assert await get_user_by_id(db_session, test_user.id) is found


class TestEnsureStripeCustomer:
    """ensure_stripe_customer links a Stripe customer to the user's row."""

    @pytest.mark.asyncio
    async def test_returns_existing_customer(self, db_session: AsyncSession, test_user: User):
        """An already linked customer is reused without calling Stripe."""
        await upsert_subscription(db_session, test_user.id, {"stripe_customer_id": "cus_known"})

        with patch(
            "subsync.services.subscription_service.create_customer",
            new_callable=AsyncMock,
        ) as mock_create:
            customer_id = await ensure_stripe_customer(db_session, test_user, "monthly", "BRL")

        assert customer_id == "cus_known"
        mock_create.assert_not_called()

    @pytest.mark.asyncio
    async def test_creates_customer_and_placeholder_row(
        self, db_session: AsyncSession, test_user: User
    ):
        """A new customer is recorded on an incomplete row that grants nothing."""
        with patch(
            "subsync.services.subscription_service.create_customer",
            new_callable=AsyncMock,
            return_value=SimpleNamespace(id="cus_new"),
        ) as mock_create:
            customer_id = await ensure_stripe_customer(db_session, test_user, "lifetime", "USD")

        assert customer_id == "cus_new"
        mock_create.assert_called_once_with(
            email=test_user.email, user_id=test_user.id, name=test_user.name
        )
        sub = await get_subscription_by_user_id(db_session, test_user.id)
        assert sub.stripe_customer_id == "cus_new"
        assert sub.status == "incomplete"
        assert sub.plan_type == "lifetime"
        assert sub.currency == "USD"

    @pytest.mark.asyncio
    async def test_keeps_existing_row_status(self, db_session: AsyncSession, test_user: User):
        """Linking a customer to an existing row leaves its status alone."""
        await upsert_subscription(db_session, test_user.id, {"status": "canceled"})

        with patch(
            "subsync.services.subscription_service.create_customer",
            new_callable=AsyncMock,
            return_value=SimpleNamespace(id="cus_relinked"),
        ):
            await ensure_stripe_customer(db_session, test_user, "monthly", "BRL")

        sub = await get_subscription_by_user_id(db_session, test_user.id)
        assert sub.stripe_customer_id == "cus_relinked"
        assert sub.status == "canceled"

"""Plan definitions — purchasable plan types, prices and price-id lookup."""

import enum
from dataclasses import dataclass, field
from datetime import datetime

from subsync.config import settings

SUPPORTED_CURRENCIES: tuple[str, ...] = ("BRL", "USD")

# Lifetime purchases have no renewal; their period end is pinned to a fixed date
# so that re-applying the same observation writes identical values.
LIFETIME_PERIOD_END = datetime(2999, 12, 31, 23, 59, 59)


class PlanType(str, enum.Enum):
    """Paid plan kinds. The free plan is the absence of a subscription row."""

    MONTHLY = "monthly"
    ANNUAL = "annual"
    LIFETIME = "lifetime"


@dataclass(frozen=True)
class PlanInfo:
    """Display and pricing data for a paid plan."""

    name: str
    display_name: str
    interval: str | None  # None for one-time purchases
    price_cents: dict[str, int] = field(default_factory=dict)
    stripe_price_ids: dict[str, str | None] = field(default_factory=dict)

    @property
    def is_recurring(self) -> bool:
        return self.interval is not None

    @property
    def checkout_mode(self) -> str:
        return "subscription" if self.is_recurring else "payment"


PLANS: dict[str, PlanInfo] = {
    PlanType.MONTHLY.value: PlanInfo(
        name=PlanType.MONTHLY.value,
        display_name="Pro Monthly",
        interval="month",
        price_cents={"BRL": 1990, "USD": 599},
        stripe_price_ids={
            "BRL": settings.stripe_price_monthly_brl or None,
            "USD": settings.stripe_price_monthly_usd or None,
        },
    ),
    PlanType.ANNUAL.value: PlanInfo(
        name=PlanType.ANNUAL.value,
        display_name="Pro Annual",
        interval="year",
        price_cents={"BRL": 9990, "USD": 2999},
        stripe_price_ids={
            "BRL": settings.stripe_price_annual_brl or None,
            "USD": settings.stripe_price_annual_usd or None,
        },
    ),
    PlanType.LIFETIME.value: PlanInfo(
        name=PlanType.LIFETIME.value,
        display_name="Pro Lifetime",
        interval=None,
        price_cents={"BRL": 28990, "USD": 7999},
        stripe_price_ids={
            "BRL": settings.stripe_price_lifetime_brl or None,
            "USD": settings.stripe_price_lifetime_usd or None,
        },
    ),
}

VALID_PLAN_TYPES: set[str] = set(PLANS.keys())


def get_plan(plan_type: str) -> PlanInfo | None:
    """Get plan info by plan type. Returns None if unknown."""
    return PLANS.get(plan_type)


def get_plan_type_by_price_id(price_id: str | None) -> str | None:
    """Reverse lookup: Stripe price ID -> plan type.

    Configured price ids win; otherwise fall back to the price naming
    convention (``..._month...``, ``..._year...``/``annual``, ``lifetime``).
    Returns None when neither matches.
    """
    if not price_id:
        return None
    for plan in PLANS.values():
        if price_id in {pid for pid in plan.stripe_price_ids.values() if pid}:
            return plan.name

    lowered = price_id.lower()
    if "lifetime" in lowered:
        return PlanType.LIFETIME.value
    if "month" in lowered:
        return PlanType.MONTHLY.value
    if "year" in lowered or "annual" in lowered:
        return PlanType.ANNUAL.value
    return None


def resolve_plan_type(
    price_id: str | None,
    metadata_plan_type: str | None = None,
    default: str = PlanType.MONTHLY.value,
) -> str:
    """Derive the plan type for a purchase from its price, then metadata, then ``default``."""
    plan_type = get_plan_type_by_price_id(price_id)
    if plan_type is not None:
        return plan_type
    if metadata_plan_type in VALID_PLAN_TYPES:
        return metadata_plan_type
    return default

"""Pydantic v2 request/response schemas for billing endpoints."""

from datetime import datetime

from pydantic import BaseModel

# --- Request schemas ---


class CheckoutRequest(BaseModel):
    """Request to create a Stripe Checkout session."""

    plan_type: str  # "monthly", "annual" or "lifetime"
    currency: str | None = None  # "BRL" or "USD"; defaults to settings.default_currency
    success_url: str | None = None
    cancel_url: str | None = None


class PortalRequest(BaseModel):
    """Request to create a Stripe Customer Portal session."""

    return_url: str | None = None


# --- Response schemas ---


class PlanResponse(BaseModel):
    """Plan details for display."""

    name: str
    display_name: str
    interval: str | None
    price_cents: dict[str, int]


class PlansListResponse(BaseModel):
    """All purchasable plans."""

    plans: list[PlanResponse]


class EntitlementResponse(BaseModel):
    """Access decision for the authenticated user."""

    entitled: bool
    plan: str  # "pro" or "free"
    status: str | None


class SubscriptionResponse(BaseModel):
    """Mirrored subscription state for the authenticated user."""

    entitled: bool
    plan: str
    plan_type: str | None
    status: str | None
    currency: str | None
    stripe_subscription_id: str | None
    current_period_start: datetime | None
    current_period_end: datetime | None
    cancel_at_period_end: bool
    canceled_at: datetime | None


class CheckoutResponse(BaseModel):
    """Stripe Checkout session URL returned to frontend."""

    checkout_url: str
    session_id: str


class PortalResponse(BaseModel):
    """Stripe Customer Portal URL returned to frontend."""

    portal_url: str


class AuditResultResponse(BaseModel):
    user_id: str
    outcome: str
    reason: str
    previous_status: str | None
    new_status: str | None
    stripe_subscription_id: str | None
    applied: bool
    message: str | None


class AuditSummaryResponse(BaseModel):
    """Outcome of a batch subscription audit."""

    dry_run: bool
    total: int
    corrected: int
    valid: int
    inconclusive: int
    errors: int
    details: list[AuditResultResponse]

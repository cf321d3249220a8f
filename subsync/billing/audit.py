"""Subscription audit — re-validate entitled local rows against Stripe and correct drift.

A transient provider failure never demotes a row: only a definitive
``resource_missing`` or a reported non-entitled status leads to a write.
"""

import asyncio
import enum
import logging
from dataclasses import asdict, dataclass, field

import stripe
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.billing.plans import PlanType
from subsync.billing.reconciliation import (
    ENTITLED_STATUSES,
    SubscriptionStatus,
    apply_remote_observation,
    normalize_status,
)
from subsync.billing.stripe_client import (
    get_customer,
    get_subscription,
    is_not_found,
    list_customer_subscriptions,
)
from subsync.billing.webhooks import observation_from_subscription
from subsync.config import settings
from subsync.models.subscription import Subscription
from subsync.services.subscription_service import (
    get_subscription_by_user_id,
    list_subscriptions_by_status,
    upsert_subscription,
)

logger = logging.getLogger(__name__)


class AuditOutcome(str, enum.Enum):
    CORRECTED = "corrected"
    VALID = "valid"
    INCONCLUSIVE = "inconclusive"
    ERROR = "error"


class AuditReason(str, enum.Enum):
    NO_RECORD = "no_record"
    NOT_ENTITLED = "not_entitled"
    CONSISTENT = "consistent"
    INVALID_NO_BACKING_ID = "invalid_no_backing_id"
    ORPHANED_ACTIVE = "orphaned_active"
    DRIFTED = "drifted"
    REMOTE_ERROR = "remote_error"
    STORE_ERROR = "store_error"
    UNEXPECTED_ERROR = "unexpected_error"


@dataclass
class AuditResult:
    """Finding for one user's row."""

    user_id: str
    outcome: AuditOutcome
    reason: AuditReason
    previous_status: str | None = None
    new_status: str | None = None
    stripe_subscription_id: str | None = None
    applied: bool = False
    message: str | None = None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["reason"] = self.reason.value
        return data


@dataclass
class AuditSummary:
    """Aggregate of a batch audit run."""

    dry_run: bool = False
    results: list[AuditResult] = field(default_factory=list)

    def _count(self, outcome: AuditOutcome) -> int:
        return sum(1 for result in self.results if result.outcome is outcome)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def corrected(self) -> int:
        return self._count(AuditOutcome.CORRECTED)

    @property
    def valid(self) -> int:
        return self._count(AuditOutcome.VALID)

    @property
    def inconclusive(self) -> int:
        return self._count(AuditOutcome.INCONCLUSIVE)

    @property
    def errors(self) -> int:
        return self._count(AuditOutcome.ERROR)

    def to_dict(self) -> dict:
        return {
            "dry_run": self.dry_run,
            "total": self.total,
            "corrected": self.corrected,
            "valid": self.valid,
            "inconclusive": self.inconclusive,
            "errors": self.errors,
            "details": [result.to_dict() for result in self.results],
        }


async def _correct(
    db: AsyncSession,
    subscription: Subscription,
    reason: AuditReason,
    new_status: str,
    apply: bool,
    message: str,
) -> AuditResult:
    previous_status = subscription.status
    if apply:
        await upsert_subscription(db, subscription.user_id, {"status": new_status})
        logger.warning(
            "Audit corrected user %s: %s -> %s (%s)",
            subscription.user_id,
            previous_status,
            new_status,
            reason.value,
        )
    else:
        logger.info(
            "Audit would correct user %s: %s -> %s (%s)",
            subscription.user_id,
            previous_status,
            new_status,
            reason.value,
        )
    return AuditResult(
        user_id=subscription.user_id,
        outcome=AuditOutcome.CORRECTED,
        reason=reason,
        previous_status=previous_status,
        new_status=new_status,
        stripe_subscription_id=subscription.stripe_subscription_id,
        applied=apply,
        message=message,
    )


async def audit_subscription(
    db: AsyncSession, subscription: Subscription, apply: bool = True
) -> AuditResult:
    """Audit a loaded row against Stripe; write a correction when ``apply`` is set."""
    local_status = subscription.status
    base = {
        "user_id": subscription.user_id,
        "previous_status": local_status,
        "stripe_subscription_id": subscription.stripe_subscription_id,
    }

    if local_status not in ENTITLED_STATUSES:
        return AuditResult(outcome=AuditOutcome.VALID, reason=AuditReason.NOT_ENTITLED, **base)

    stripe_subscription_id = subscription.stripe_subscription_id
    if not stripe_subscription_id:
        if subscription.plan_type == PlanType.LIFETIME.value:
            return AuditResult(outcome=AuditOutcome.VALID, reason=AuditReason.CONSISTENT, **base)
        return await _correct(
            db,
            subscription,
            AuditReason.INVALID_NO_BACKING_ID,
            SubscriptionStatus.CANCELED.value,
            apply,
            f"{subscription.plan_type} plan has no Stripe subscription id",
        )

    try:
        stripe_sub = await asyncio.wait_for(
            get_subscription(stripe_subscription_id),
            timeout=settings.stripe_timeout_seconds,
        )
    except stripe.StripeError as e:
        if is_not_found(e):
            return await _correct(
                db,
                subscription,
                AuditReason.ORPHANED_ACTIVE,
                SubscriptionStatus.CANCELED.value,
                apply,
                f"Stripe subscription {stripe_subscription_id} does not exist",
            )
        logger.warning(
            "Audit inconclusive for user %s: Stripe error %s",
            subscription.user_id,
            e,
        )
        return AuditResult(
            outcome=AuditOutcome.INCONCLUSIVE,
            reason=AuditReason.REMOTE_ERROR,
            message=str(e) or type(e).__name__,
            **base,
        )
    except asyncio.TimeoutError:
        logger.warning(
            "Audit inconclusive for user %s: Stripe lookup timed out", subscription.user_id
        )
        return AuditResult(
            outcome=AuditOutcome.INCONCLUSIVE,
            reason=AuditReason.REMOTE_ERROR,
            message="Stripe lookup timed out",
            **base,
        )

    remote_status = normalize_status(stripe_sub.status)
    if remote_status == local_status:
        return AuditResult(outcome=AuditOutcome.VALID, reason=AuditReason.CONSISTENT, **base)

    return await _correct(
        db,
        subscription,
        AuditReason.DRIFTED,
        remote_status,
        apply,
        f"Stripe reports {stripe_sub.status}",
    )


async def audit_single(db: AsyncSession, user_id: str, apply: bool = True) -> AuditResult:
    """Audit one user's row. A user without a row is on the free plan and consistent."""
    subscription = await get_subscription_by_user_id(db, user_id)
    if subscription is None:
        return AuditResult(user_id=user_id, outcome=AuditOutcome.VALID, reason=AuditReason.NO_RECORD)
    return await audit_subscription(db, subscription, apply=apply)


async def run_batch_audit(
    session_factory: async_sessionmaker[AsyncSession], apply: bool = True
) -> AuditSummary:
    """Audit every entitled row, each in its own transaction.

    A failure on one row is recorded as an error and the scan continues.
    """
    async with session_factory() as db:
        subscriptions = await list_subscriptions_by_status(db, ENTITLED_STATUSES)
        user_ids = [subscription.user_id for subscription in subscriptions]

    logger.info("Auditing %d entitled subscriptions (apply=%s)", len(user_ids), apply)
    summary = AuditSummary(dry_run=not apply)

    for user_id in user_ids:
        async with session_factory() as db:
            try:
                result = await audit_single(db, user_id, apply=apply)
                await db.commit()
            except Exception as e:
                await db.rollback()
                logger.exception("Audit failed for user %s", user_id)
                result = AuditResult(
                    user_id=user_id,
                    outcome=AuditOutcome.ERROR,
                    reason=(
                        AuditReason.STORE_ERROR
                        if isinstance(e, SQLAlchemyError)
                        else AuditReason.UNEXPECTED_ERROR
                    ),
                    applied=False,
                    message=str(e) or type(e).__name__,
                )
        summary.results.append(result)

    logger.info(
        "Audit finished: %d total, %d corrected, %d valid, %d inconclusive, %d errors",
        summary.total,
        summary.corrected,
        summary.valid,
        summary.inconclusive,
        summary.errors,
    )
    return summary


def _pick_subscription(candidates: list[stripe.Subscription]) -> stripe.Subscription | None:
    """Prefer an entitled subscription, then the most recently created one."""
    if not candidates:
        return None
    return max(
        candidates,
        key=lambda sub: (sub.status in ENTITLED_STATUSES, getattr(sub, "created", 0) or 0),
    )


async def resync_from_remote(db: AsyncSession, user_id: str) -> Subscription | None:
    """Rebuild a user's row from the subscriptions Stripe holds for their customer.

    Returns the updated row, or None when there is nothing to resync from.
    Stripe errors propagate so the operator sees them.
    """
    subscription = await get_subscription_by_user_id(db, user_id)
    if subscription is None or not subscription.stripe_customer_id:
        logger.warning("User %s has no Stripe customer to resync from", user_id)
        return None

    customer_id = subscription.stripe_customer_id
    try:
        customer = await get_customer(customer_id)
    except stripe.StripeError as e:
        if is_not_found(e):
            logger.warning("Stripe customer %s for user %s no longer exists", customer_id, user_id)
            return None
        raise
    if getattr(customer, "deleted", False):
        logger.warning("Stripe customer %s for user %s was deleted", customer_id, user_id)
        return None

    remote = _pick_subscription(await list_customer_subscriptions(customer_id))
    if remote is None:
        logger.info("Stripe customer %s has no subscriptions", customer_id)
        return None

    return await apply_remote_observation(db, observation_from_subscription(remote))

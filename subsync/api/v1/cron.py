"""Scheduled job endpoints — called by the platform cron with a shared secret."""

import logging
import secrets

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subsync.billing.audit import run_batch_audit
from subsync.config import settings
from subsync.database import get_session_factory
from subsync.schemas.billing import AuditSummaryResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cron", tags=["cron"])

_bearer_scheme = HTTPBearer(auto_error=False)


def verify_cron_secret(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    """Require ``Authorization: Bearer <CRON_SECRET>``."""
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Cron secret not configured",
        )
    if credentials is None or not secrets.compare_digest(
        credentials.credentials.encode(), settings.cron_secret.encode()
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        )


@router.post(
    "/cleanup-subscriptions",
    response_model=AuditSummaryResponse,
    dependencies=[Depends(verify_cron_secret)],
)
async def cleanup_subscriptions(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AuditSummaryResponse:
    """Audit every entitled subscription against Stripe and apply corrections."""
    summary = await run_batch_audit(session_factory, apply=True)
    logger.info(
        "Scheduled cleanup finished: %d corrected, %d inconclusive, %d errors",
        summary.corrected,
        summary.inconclusive,
        summary.errors,
    )
    return AuditSummaryResponse.model_validate(summary.to_dict())

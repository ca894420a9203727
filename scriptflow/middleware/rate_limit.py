"""Rate limiting: per-identity fixed window for submissions, SlowAPI per-IP for pages."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Request
from slowapi import Limiter
from slowapi.util import get_remote_address
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from scriptflow.config import get_settings
from scriptflow.db.models import RateLimitCounter
from scriptflow.db.session import insert_ignoring_conflicts
from scriptflow.services.job_service import as_utc

settings = get_settings()
logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Rate limit key for unauthenticated public routes."""
    return f"ip:{get_remote_address(request)}"


# Per-IP limiter for the public script page. Storage errors are swallowed so
# a Redis outage never takes the page down.
limiter = Limiter(
    key_func=get_client_ip,
    storage_uri=settings.rate_limit_storage_uri,
    strategy="fixed-window",
    enabled=settings.rate_limit_enabled,
    swallow_errors=True,
)


@dataclass
class RateLimitDecision:
    allowed: bool
    count: int
    reset_at: Optional[datetime]
    fail_open: bool = False

    @property
    def retry_after_seconds(self) -> int:
        if self.reset_at is None:
            return 0
        return max(int((self.reset_at - datetime.now(timezone.utc)).total_seconds()), 0)


class SubmissionRateLimitExceeded(Exception):
    """Raised when an identity used up its submissions for the window."""

    def __init__(self, decision: RateLimitDecision):
        super().__init__("Rate limit exceeded")
        self.decision = decision


class FixedWindowRateLimiter:
    """
    Database-backed fixed-window counter per caller identity.

    The first request after a window has expired starts a new window at its
    own timestamp and counts as 1. Any database error fails open.
    """

    def __init__(self, window_seconds: Optional[int] = None, max_requests: Optional[int] = None):
        self.window = timedelta(seconds=window_seconds or settings.rate_limit_window_seconds)
        self.max_requests = max_requests or settings.rate_limit_max_requests

    async def hit(
        self,
        db: AsyncSession,
        identity: str,
        now: Optional[datetime] = None,
    ) -> RateLimitDecision:
        now = now or datetime.now(timezone.utc)

        try:
            created = await db.execute(
                insert_ignoring_conflicts(db, RateLimitCounter).values(
                    identity=identity, window_start=now, count=1
                )
            )
            if created.rowcount != 1:
                restarted = await db.execute(
                    update(RateLimitCounter)
                    .where(
                        RateLimitCounter.identity == identity,
                        RateLimitCounter.window_start <= now - self.window,
                    )
                    .values(window_start=now, count=1)
                )
                if restarted.rowcount != 1:
                    await db.execute(
                        update(RateLimitCounter)
                        .where(RateLimitCounter.identity == identity)
                        .values(count=RateLimitCounter.count + 1)
                    )

            row = (
                await db.execute(
                    select(RateLimitCounter.window_start, RateLimitCounter.count).where(
                        RateLimitCounter.identity == identity
                    )
                )
            ).one()
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            logger.warning(f"Rate limiter unavailable, allowing request: {e}")
            return RateLimitDecision(allowed=True, count=0, reset_at=None, fail_open=True)

        reset_at = as_utc(row.window_start) + self.window
        return RateLimitDecision(
            allowed=row.count <= self.max_requests,
            count=row.count,
            reset_at=reset_at,
        )


submission_rate_limiter = FixedWindowRateLimiter()


async def enforce_submission_rate_limit(db: AsyncSession, identity: str) -> RateLimitDecision:
    """Count a submission for ``identity``, raising if it is over the limit."""
    if not settings.rate_limit_enabled:
        return RateLimitDecision(allowed=True, count=0, reset_at=None)

    decision = await submission_rate_limiter.hit(db, identity)
    if not decision.allowed:
        logger.warning(f"Rate limit exceeded for identity {identity} ({decision.count} requests)")
        raise SubmissionRateLimitExceeded(decision)
    return decision

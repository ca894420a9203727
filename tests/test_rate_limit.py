"""Tests for the per-identity fixed-window rate limiter."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from scriptflow.middleware.rate_limit import FixedWindowRateLimiter

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_requests_up_to_quota_are_allowed(db_session):
    limiter = FixedWindowRateLimiter(window_seconds=900, max_requests=3)

    decisions = [await limiter.hit(db_session, "u1", now=NOW) for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.count for d in decisions] == [1, 2, 3, 4]
    assert decisions[-1].reset_at == NOW + timedelta(seconds=900)


@pytest.mark.asyncio
async def test_identities_are_counted_separately(db_session):
    limiter = FixedWindowRateLimiter(window_seconds=900, max_requests=1)

    assert (await limiter.hit(db_session, "u1", now=NOW)).allowed
    assert not (await limiter.hit(db_session, "u1", now=NOW)).allowed
    assert (await limiter.hit(db_session, "u2", now=NOW)).allowed


@pytest.mark.asyncio
async def test_window_rolls_over_after_expiry(db_session):
    limiter = FixedWindowRateLimiter(window_seconds=900, max_requests=2)

    for _ in range(3):
        await limiter.hit(db_session, "u1", now=NOW)

    later = NOW + timedelta(seconds=900)
    decision = await limiter.hit(db_session, "u1", now=later)

    assert decision.allowed
    assert decision.count == 1
    assert decision.reset_at == later + timedelta(seconds=900)


@pytest.mark.asyncio
async def test_window_does_not_roll_over_early(db_session):
    limiter = FixedWindowRateLimiter(window_seconds=900, max_requests=1)

    await limiter.hit(db_session, "u1", now=NOW)
    decision = await limiter.hit(db_session, "u1", now=NOW + timedelta(seconds=899))

    assert not decision.allowed
    assert decision.count == 2


@pytest.mark.asyncio
async def test_store_failure_fails_open(db_session, monkeypatch):
    limiter = FixedWindowRateLimiter(window_seconds=900, max_requests=1)

    async def broken_execute(*args, **kwargs):
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    monkeypatch.setattr(db_session, "execute", broken_execute)

    decision = await limiter.hit(db_session, "u1", now=NOW)

    assert decision.allowed
    assert decision.fail_open
    assert decision.retry_after_seconds == 0


def test_retry_after_counts_down_to_reset():
    from scriptflow.middleware.rate_limit import RateLimitDecision

    reset_at = datetime.now(timezone.utc) + timedelta(seconds=120)
    decision = RateLimitDecision(allowed=False, count=5, reset_at=reset_at)

    assert 118 <= decision.retry_after_seconds <= 120

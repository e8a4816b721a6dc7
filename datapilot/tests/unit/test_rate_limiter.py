from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from datapilot.persistence.db import SessionLocal
from datapilot.persistence.repos import jobs as jobs_repo
from datapilot.services.rate_limit import RateLimitConfig, RateLimiter, window_start_for
from datapilot.services.telemetry import counters_snapshot
from datapilot.tests.utils.fakes import unique_id, unreachable_session_factory


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _limiter(clock: _Clock | None = None, *, max_requests: int = 2) -> RateLimiter:
    return RateLimiter(
        SessionLocal,
        limits={"query": RateLimitConfig(max_requests=max_requests, window_seconds=60)},
        max_concurrent_jobs=2,
        cleanup_horizon_seconds=3600,
        time_provider=clock,
    )


def test_window_start_floors_to_epoch_boundaries() -> None:
    now = datetime(2026, 3, 1, 12, 0, 59, tzinfo=timezone.utc)
    assert window_start_for(now, 60) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert window_start_for(now, 3600) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_fixed_window_allows_then_rejects_then_resets() -> None:
    clock = _Clock(datetime(2026, 3, 1, 12, 0, 5, tzinfo=timezone.utc))
    limiter = _limiter(clock)
    tenant_id = unique_id("t-rl")

    first = await limiter.check_limit(tenant_id, "query")
    second = await limiter.check_limit(tenant_id, "query")
    third = await limiter.check_limit(tenant_id, "query")

    assert (first.allowed, first.remaining) == (True, 1)
    assert (second.allowed, second.remaining) == (True, 0)
    assert (third.allowed, third.remaining) == (False, 0)
    assert third.reset_at == datetime(2026, 3, 1, 12, 1, tzinfo=timezone.utc)

    clock.now += timedelta(seconds=60)
    fourth = await limiter.check_limit(tenant_id, "query")
    assert fourth.allowed is True
    assert fourth.remaining == 1


@pytest.mark.asyncio
async def test_limits_are_per_tenant() -> None:
    limiter = _limiter(max_requests=1)
    tenant_a, tenant_b = unique_id("t-a"), unique_id("t-b")

    assert (await limiter.check_limit(tenant_a, "query")).allowed is True
    assert (await limiter.check_limit(tenant_a, "query")).allowed is False
    assert (await limiter.check_limit(tenant_b, "query")).allowed is True


@pytest.mark.asyncio
async def test_unknown_endpoint_is_unlimited() -> None:
    decision = await _limiter().check_limit(unique_id("t-rl"), "export")
    assert decision.allowed is True
    assert decision.remaining is None


@pytest.mark.asyncio
async def test_concurrent_job_cap_counts_live_jobs_only() -> None:
    limiter = _limiter()
    tenant_id = unique_id("t-jobs")
    async with SessionLocal() as session:
        for status in ("queued", "running", "completed"):
            job_id = unique_id("job")
            await jobs_repo.create_job(
                session, job_id=job_id, tenant_id=tenant_id, project_id="p1", credits_budget=1.0
            )
            await jobs_repo.update_job(session, job_id, status=status)
        await session.commit()

    decision = await limiter.check_concurrent_jobs(tenant_id)
    assert decision.allowed is False
    assert (decision.current, decision.max) == (2, 2)


@pytest.mark.asyncio
async def test_cleanup_removes_old_windows() -> None:
    clock = _Clock(datetime(2020, 1, 1, 0, 0, tzinfo=timezone.utc))
    limiter = _limiter(clock)
    tenant_id = unique_id("t-clean")
    await limiter.check_limit(tenant_id, "query")

    clock.now += timedelta(hours=2)
    assert await limiter.cleanup() >= 1
    # The old window is gone, so a new request in that window starts from scratch.
    clock.now -= timedelta(hours=2)
    assert (await limiter.check_limit(tenant_id, "query")).remaining == 1


@pytest.mark.asyncio
async def test_zero_limit_rejects_every_request() -> None:
    limiter = _limiter(max_requests=0)
    decision = await limiter.check_limit(unique_id("t-zero"), "query")
    assert decision.allowed is False
    assert decision.remaining == 0


@pytest.mark.asyncio
async def test_limiter_fails_open_when_storage_is_unreachable() -> None:
    limiter = RateLimiter(
        unreachable_session_factory,
        limits={"query": RateLimitConfig(max_requests=1, window_seconds=60)},
        max_concurrent_jobs=1,
    )

    decision = await limiter.check_limit("t-down", "query")
    assert decision.allowed is True
    assert decision.degraded is True
    assert decision.remaining is None

    jobs = await limiter.check_concurrent_jobs("t-down")
    assert jobs.allowed is True
    assert jobs.degraded is True

    assert await limiter.cleanup() == 0
    assert counters_snapshot().get("rate_limit_degraded_total") == 2

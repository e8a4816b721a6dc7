from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
import math
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.core.config import Settings
from datapilot.domain.analysis import ACTIVE_JOB_STATUSES
from datapilot.domain.models import BackgroundJob, RateLimitWindow
from datapilot.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    max_requests: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    # None when the endpoint is unlimited or the decision was made without storage.
    remaining: int | None
    reset_at: datetime | None
    degraded: bool = False


@dataclass(frozen=True)
class ConcurrencyDecision:
    allowed: bool
    current: int
    max: int
    degraded: bool = False


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def limits_from_settings(settings: Settings) -> dict[str, RateLimitConfig]:
    window = settings.rate_limit_window_s
    return {
        "query": RateLimitConfig(settings.rate_limit_query_max, window),
        "suggestions": RateLimitConfig(settings.rate_limit_suggestions_max, window),
        "export": RateLimitConfig(settings.rate_limit_export_max, window),
        "background_analysis": RateLimitConfig(settings.rate_limit_analysis_max, window),
    }


def window_start_for(now: datetime, window_seconds: int) -> datetime:
    # Floor to the window size on the epoch so every process agrees on boundaries.
    epoch = now.timestamp()
    start = math.floor(epoch / window_seconds) * window_seconds
    return datetime.fromtimestamp(start, tz=timezone.utc)


class RateLimiter:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        limits: dict[str, RateLimitConfig],
        max_concurrent_jobs: int = 3,
        cleanup_horizon_seconds: int = 3600,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._limits = dict(limits)
        self._max_concurrent_jobs = max_concurrent_jobs
        self._cleanup_horizon = timedelta(seconds=cleanup_horizon_seconds)
        # Allow time injection for deterministic window rollover tests.
        self._time_provider = time_provider or _utc_now

    async def check_limit(self, tenant_id: str, endpoint: str) -> RateLimitDecision:
        config = self._limits.get(endpoint)
        if config is None:
            return RateLimitDecision(allowed=True, remaining=None, reset_at=None)
        now = self._time_provider()
        window_start = window_start_for(now, config.window_seconds)
        reset_at = window_start + timedelta(seconds=config.window_seconds)
        if config.max_requests <= 0:
            increment_counter(f"rate_limited_total.{endpoint}")
            logger.info("rate_limit_rejected tenant_id=%s endpoint=%s", tenant_id, endpoint)
            return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
        try:
            async with self._session_factory() as session:
                # Two passes cover the race where another request creates the window first.
                for _attempt in range(2):
                    count = await self._consume(session, tenant_id, endpoint, window_start, config)
                    if count is not None:
                        return RateLimitDecision(
                            allowed=True,
                            remaining=max(config.max_requests - count, 0),
                            reset_at=reset_at,
                        )
                    existing = await self._current_count(session, tenant_id, endpoint, window_start)
                    if existing is not None:
                        break
                    if await self._create_window(session, tenant_id, endpoint, window_start):
                        return RateLimitDecision(
                            allowed=True,
                            remaining=max(config.max_requests - 1, 0),
                            reset_at=reset_at,
                        )
            increment_counter(f"rate_limited_total.{endpoint}")
            logger.info("rate_limit_rejected tenant_id=%s endpoint=%s", tenant_id, endpoint)
            return RateLimitDecision(allowed=False, remaining=0, reset_at=reset_at)
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            # Fail open so a storage hiccup never blocks the product.
            increment_counter("rate_limit_degraded_total")
            logger.warning("rate_limit_check_failed tenant_id=%s endpoint=%s", tenant_id, endpoint, exc_info=exc)
            return RateLimitDecision(allowed=True, remaining=None, reset_at=reset_at, degraded=True)

    @staticmethod
    async def _consume(
        session: AsyncSession,
        tenant_id: str,
        endpoint: str,
        window_start: datetime,
        config: RateLimitConfig,
    ) -> int | None:
        # Increment only while under the limit so concurrent requests cannot overshoot it.
        result = await session.execute(
            update(RateLimitWindow)
            .where(
                RateLimitWindow.tenant_id == tenant_id,
                RateLimitWindow.endpoint == endpoint,
                RateLimitWindow.window_start == window_start,
                RateLimitWindow.request_count < config.max_requests,
            )
            .values(request_count=RateLimitWindow.request_count + 1)
        )
        if not result.rowcount:
            await session.rollback()
            return None
        count = await RateLimiter._current_count(session, tenant_id, endpoint, window_start)
        await session.commit()
        return int(count or 0)

    @staticmethod
    async def _current_count(
        session: AsyncSession, tenant_id: str, endpoint: str, window_start: datetime
    ) -> int | None:
        result = await session.execute(
            select(RateLimitWindow.request_count).where(
                RateLimitWindow.tenant_id == tenant_id,
                RateLimitWindow.endpoint == endpoint,
                RateLimitWindow.window_start == window_start,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _create_window(
        session: AsyncSession, tenant_id: str, endpoint: str, window_start: datetime
    ) -> bool:
        session.add(
            RateLimitWindow(
                tenant_id=tenant_id,
                endpoint=endpoint,
                window_start=window_start,
                request_count=1,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return False
        return True

    async def check_concurrent_jobs(self, tenant_id: str) -> ConcurrencyDecision:
        # Count persisted live jobs so the cap survives restarts and spans processes.
        try:
            async with self._session_factory() as session:
                current = (
                    await session.execute(
                        select(func.count(BackgroundJob.id)).where(
                            BackgroundJob.tenant_id == tenant_id,
                            BackgroundJob.status.in_(ACTIVE_JOB_STATUSES),
                        )
                    )
                ).scalar_one()
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            increment_counter("rate_limit_degraded_total")
            logger.warning("concurrency_check_failed tenant_id=%s", tenant_id, exc_info=exc)
            return ConcurrencyDecision(
                allowed=True, current=0, max=self._max_concurrent_jobs, degraded=True
            )
        current = int(current or 0)
        return ConcurrencyDecision(
            allowed=current < self._max_concurrent_jobs,
            current=current,
            max=self._max_concurrent_jobs,
        )

    async def cleanup(self) -> int:
        cutoff = self._time_provider() - self._cleanup_horizon
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    delete(RateLimitWindow).where(RateLimitWindow.window_start < cutoff)
                )
                await session.commit()
        except Exception as exc:  # noqa: BLE001 - storage outages surface as driver or OS errors
            logger.warning("rate_limit_cleanup_failed", exc_info=exc)
            return 0
        deleted = result.rowcount or 0
        if deleted:
            logger.info("rate_limit_cleanup deleted=%s", deleted)
        return deleted

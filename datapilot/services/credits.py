from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging
from typing import Callable, Literal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.core.config import Settings, get_settings
from datapilot.domain.models import CreditUsage


logger = logging.getLogger(__name__)

UsagePurpose = Literal["query", "insights", "background_analysis"]

# Interactive calls count as queries; everything a job spends counts against the job tally.
_PURPOSE_COUNTERS: dict[str, str] = {
    "query": "query_count",
    "background_analysis": "background_analysis_count",
}


@dataclass(frozen=True)
class CreditSnapshot:
    period_start: datetime
    allocated: float
    used: float
    query_count: int = 0
    background_analysis_count: int = 0

    @property
    def remaining(self) -> float:
        return max(self.allocated - self.used, 0.0)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1, tzinfo=timezone.utc)


def _shift_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + (value.month - 1) - months
    return datetime(index // 12, index % 12 + 1, 1, tzinfo=timezone.utc)


def calculate_cost(
    input_tokens: int,
    output_tokens: int,
    *,
    input_usd_per_million: float = 3.0,
    output_usd_per_million: float = 15.0,
) -> float:
    return (input_tokens / 1_000_000) * input_usd_per_million + (
        output_tokens / 1_000_000
    ) * output_usd_per_million


class CreditLedger:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        # Allow time injection for deterministic month rollover tests.
        self._time_provider = time_provider or _utc_now

    def cost_of(self, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(
            input_tokens,
            output_tokens,
            input_usd_per_million=self._settings.credit_input_usd_per_million,
            output_usd_per_million=self._settings.credit_output_usd_per_million,
        )

    def _snapshot(self, row: CreditUsage | None, period_start: datetime) -> CreditSnapshot:
        if row is None:
            return CreditSnapshot(
                period_start=period_start,
                allocated=self._settings.credit_default_allocation_usd,
                used=0.0,
            )
        return CreditSnapshot(
            period_start=period_start,
            allocated=float(row.credits_allocated or 0.0),
            used=float(row.credits_used or 0.0),
            query_count=int(row.query_count or 0),
            background_analysis_count=int(row.background_analysis_count or 0),
        )

    async def get_current_usage(self, tenant_id: str) -> CreditSnapshot:
        period_start = month_start(self._time_provider())
        async with self._session_factory() as session:
            row = await session.get(CreditUsage, (tenant_id, period_start))
            return self._snapshot(row, period_start)

    async def has_budget(self, tenant_id: str, estimated_cost: float = 0.0) -> bool:
        usage = await self.get_current_usage(tenant_id)
        return usage.remaining >= estimated_cost

    async def track_usage(
        self,
        tenant_id: str,
        input_tokens: int,
        output_tokens: int,
        purpose: UsagePurpose,
    ) -> CreditSnapshot | None:
        # Nothing was consumed, so there is nothing to record.
        if not input_tokens and not output_tokens:
            return None
        cost = self.cost_of(input_tokens, output_tokens)
        period_start = month_start(self._time_provider())
        values: dict[str, object] = {
            "credits_used": CreditUsage.credits_used + cost,
        }
        counter = _PURPOSE_COUNTERS.get(purpose)
        if counter is not None:
            values[counter] = getattr(CreditUsage, counter) + 1

        async with self._session_factory() as session:
            await self._ensure_row(session, tenant_id, period_start)
            await session.execute(
                update(CreditUsage)
                .where(CreditUsage.tenant_id == tenant_id, CreditUsage.period_start == period_start)
                .values(**values)
            )
            await session.commit()
            row = await session.get(CreditUsage, (tenant_id, period_start), populate_existing=True)
            snapshot = self._snapshot(row, period_start)
        logger.info(
            "credits_tracked tenant_id=%s purpose=%s input_tokens=%s output_tokens=%s cost=%.6f",
            tenant_id,
            purpose,
            input_tokens,
            output_tokens,
            cost,
        )
        return snapshot

    async def set_monthly_budget(self, tenant_id: str, amount: float) -> CreditSnapshot:
        if amount < 0:
            raise ValueError("Monthly budget must be non-negative")
        period_start = month_start(self._time_provider())
        async with self._session_factory() as session:
            await self._ensure_row(session, tenant_id, period_start)
            await session.execute(
                update(CreditUsage)
                .where(CreditUsage.tenant_id == tenant_id, CreditUsage.period_start == period_start)
                .values(credits_allocated=amount)
            )
            await session.commit()
            row = await session.get(CreditUsage, (tenant_id, period_start), populate_existing=True)
            return self._snapshot(row, period_start)

    async def get_usage_history(self, tenant_id: str, months: int = 12) -> list[CreditSnapshot]:
        current = month_start(self._time_provider())
        earliest = _shift_months(current, max(months - 1, 0))
        async with self._session_factory() as session:
            rows = (
                await session.execute(
                    select(CreditUsage)
                    .where(
                        CreditUsage.tenant_id == tenant_id,
                        CreditUsage.period_start >= earliest,
                    )
                    .order_by(CreditUsage.period_start.desc())
                )
            ).scalars().all()
        return [self._snapshot(row, month_start(row.period_start)) for row in rows]

    async def _ensure_row(self, session: AsyncSession, tenant_id: str, period_start: datetime) -> None:
        # Create the month row lazily with the default allocation; tolerate a concurrent creator.
        existing = await session.get(CreditUsage, (tenant_id, period_start))
        if existing is not None:
            return
        session.add(
            CreditUsage(
                tenant_id=tenant_id,
                period_start=period_start,
                credits_allocated=self._settings.credit_default_allocation_usd,
                credits_used=0.0,
                query_count=0,
                background_analysis_count=0,
            )
        )
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()

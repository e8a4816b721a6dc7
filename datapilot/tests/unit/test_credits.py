from __future__ import annotations

from datetime import datetime, timezone

import pytest

from datapilot.core.config import Settings
from datapilot.persistence.db import SessionLocal
from datapilot.services.credits import CreditLedger, calculate_cost, month_start
from datapilot.tests.utils.fakes import unique_id


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def test_calculate_cost_uses_per_million_pricing() -> None:
    assert calculate_cost(1_000_000, 0) == pytest.approx(3.0)
    assert calculate_cost(0, 1_000_000) == pytest.approx(15.0)
    assert calculate_cost(10_000, 2_000) == pytest.approx(0.06)


def test_month_start_truncates_to_first_day() -> None:
    value = datetime(2026, 7, 19, 13, 45, tzinfo=timezone.utc)
    assert month_start(value) == datetime(2026, 7, 1, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_new_tenant_starts_with_default_allocation() -> None:
    ledger = CreditLedger(SessionLocal, Settings(credit_default_allocation_usd=10.0))
    usage = await ledger.get_current_usage(unique_id("t-credit"))
    assert usage.allocated == 10.0
    assert usage.used == 0.0
    assert usage.remaining == 10.0
    assert await ledger.has_budget(unique_id("t-credit"), 9.99) is True


@pytest.mark.asyncio
async def test_track_usage_accumulates_cost_and_purpose_counters() -> None:
    ledger = CreditLedger(SessionLocal, Settings())
    tenant_id = unique_id("t-credit")

    await ledger.track_usage(tenant_id, 10_000, 2_000, "query")
    await ledger.track_usage(tenant_id, 10_000, 2_000, "background_analysis")
    snapshot = await ledger.track_usage(tenant_id, 10_000, 2_000, "insights")

    assert snapshot is not None
    assert snapshot.used == pytest.approx(0.18)
    assert snapshot.query_count == 1
    assert snapshot.background_analysis_count == 1
    assert (await ledger.get_current_usage(tenant_id)).remaining == pytest.approx(9.82)


@pytest.mark.asyncio
async def test_zero_token_usage_is_not_recorded() -> None:
    ledger = CreditLedger(SessionLocal, Settings())
    tenant_id = unique_id("t-credit")
    assert await ledger.track_usage(tenant_id, 0, 0, "query") is None
    assert await ledger.get_usage_history(tenant_id) == []


@pytest.mark.asyncio
async def test_remaining_never_goes_negative() -> None:
    ledger = CreditLedger(SessionLocal, Settings())
    tenant_id = unique_id("t-credit")
    await ledger.set_monthly_budget(tenant_id, 0.01)
    await ledger.track_usage(tenant_id, 100_000, 10_000, "query")

    usage = await ledger.get_current_usage(tenant_id)
    assert usage.used > usage.allocated
    assert usage.remaining == 0.0
    assert await ledger.has_budget(tenant_id, 0.01) is False


@pytest.mark.asyncio
async def test_set_monthly_budget_rejects_negative_amounts() -> None:
    ledger = CreditLedger(SessionLocal, Settings())
    with pytest.raises(ValueError):
        await ledger.set_monthly_budget(unique_id("t-credit"), -1.0)


@pytest.mark.asyncio
async def test_usage_rolls_over_by_month_and_history_is_newest_first() -> None:
    clock = _Clock(datetime(2026, 1, 20, tzinfo=timezone.utc))
    ledger = CreditLedger(SessionLocal, Settings(), time_provider=clock)
    tenant_id = unique_id("t-credit")

    await ledger.track_usage(tenant_id, 10_000, 2_000, "query")
    clock.now = datetime(2026, 2, 3, tzinfo=timezone.utc)
    assert (await ledger.get_current_usage(tenant_id)).used == 0.0
    await ledger.track_usage(tenant_id, 20_000, 4_000, "query")

    history = await ledger.get_usage_history(tenant_id, months=12)
    assert [item.period_start.month for item in history] == [2, 1]
    assert history[0].used == pytest.approx(0.12)
    assert history[1].used == pytest.approx(0.06)

    assert len(await ledger.get_usage_history(tenant_id, months=1)) == 1

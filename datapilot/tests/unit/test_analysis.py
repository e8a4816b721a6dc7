from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from datapilot.core.config import Settings
from datapilot.core.errors import InsufficientCreditsError
from datapilot.datastores.registry import DataStoreRegistry
from datapilot.domain.models import BackgroundJob
from datapilot.persistence.db import SessionLocal
from datapilot.providers.llm.base import CompletionResult
from datapilot.providers.llm.fake import FakeCompletionProvider
from datapilot.services.analysis.planner import (
    FALLBACK_SUMMARY,
    NO_INSIGHTS_SUMMARY,
    generate_executive_summary,
)
from datapilot.services.analysis.runner import CANCELLED_MESSAGE, INTERRUPTED_MESSAGE
from datapilot.services.container import Services, build_services
from datapilot.tests.utils.fakes import (
    INSIGHT_REPLY,
    REVENUE_BY_REGION_SQL,
    analysis_responder,
    connected_orders_store,
    is_summary_call,
    plan_reply,
    query_reply,
    unique_id,
)


async def _no_sleep(_seconds: float) -> None:
    return None


def _services(
    tmp_path,
    provider: FakeCompletionProvider,
    *,
    mode: str = "inline",
    plan_size: int = 3,
    sleep=_no_sleep,
) -> Services:
    settings = Settings(
        analysis_execution_mode=mode,
        analysis_step_delay_ms=0,
        analysis_plan_size=plan_size,
        tenant_data_dir=str(tmp_path / "tenants"),
    )
    return build_services(
        settings,
        session_factory=SessionLocal,
        provider=provider,
        data_stores=DataStoreRegistry(settings),
        sleep=sleep,
    )


async def _job_count(tenant_id: str) -> int:
    async with SessionLocal() as session:
        return (
            await session.execute(
                select(func.count(BackgroundJob.id)).where(BackgroundJob.tenant_id == tenant_id)
            )
        ).scalar_one()


@pytest.mark.asyncio
async def test_analysis_runs_every_step_and_summarizes(tmp_path) -> None:
    provider = FakeCompletionProvider(responder=analysis_responder(plan_size=3))
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-analysis")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        job = await services.analysis.get_job(tenant_id, job_id)
        queries = await services.analysis.get_job_queries(tenant_id, job_id)
        recent = await services.analysis.get_recent_completed_jobs(tenant_id)
        usage = await services.ledger.get_current_usage(tenant_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "completed"
    assert job.total_questions_planned == 3
    assert job.questions_completed == 3
    assert [finding.status for finding in job.findings] == ["success"] * 3
    assert [finding.question_index for finding in job.findings] == [0, 1, 2]
    assert all(finding.insight_count == 1 for finding in job.findings)
    assert job.executive_summary == "Revenue is concentrated in the north region."
    assert job.started_at is not None and job.completed_at is not None
    # Plan, three asks, three insight calls and the summary are all charged.
    assert job.credits_used == pytest.approx(services.ledger.cost_of(100, 50) * 8)
    assert usage.used == pytest.approx(job.credits_used)
    assert usage.background_analysis_count == 1
    assert usage.query_count == 0

    assert len(queries) == 3
    assert all(query.status == "success" for query in queries)
    assert queries[0].result_summary.column_names == ["region", "total_revenue"]
    assert queries[0].insight_count == 1
    assert [item.id for item in recent] == [job_id]
    assert recent[0].insight_count == 3


@pytest.mark.asyncio
async def test_analysis_pauses_when_budget_is_spent(tmp_path) -> None:
    responder = analysis_responder(
        plan=CompletionResult(plan_reply(5), 0, 0),
        query=CompletionResult(query_reply(REVENUE_BY_REGION_SQL), 10_000, 2_000),
        insight=CompletionResult(INSIGHT_REPLY, 0, 0),
    )
    provider = FakeCompletionProvider(responder=responder)
    services = _services(tmp_path, provider, plan_size=5)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-paused")
    try:
        job_id = await services.analysis.start(
            tenant_id=tenant_id, project_id="p1", data_store=store, requested_budget=0.10
        )
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "paused_credits"
    assert job.credits_budget == pytest.approx(0.10)
    # Each step costs 0.06, so the second step overshoots and the third never starts.
    assert job.questions_completed == 2
    assert len(job.findings) == 2
    assert job.credits_used == pytest.approx(0.12)
    assert job.total_questions_planned == 5
    assert job.executive_summary is None
    assert not any(is_summary_call(call["user_message"]) for call in provider.calls)


@pytest.mark.asyncio
async def test_analysis_cancel_stops_before_next_step(tmp_path) -> None:
    tenant_id = unique_id("t-cancel")
    sleeps = {"count": 0}
    holder: dict[str, Services] = {}

    async def cancelling_sleep(_seconds: float) -> None:
        # The fourth pause happens between step four and step five.
        sleeps["count"] += 1
        if sleeps["count"] == 4:
            [active] = await holder["services"].analysis.get_active_jobs(tenant_id)
            assert await holder["services"].analysis.cancel(active.id, tenant_id=tenant_id) is True

    provider = FakeCompletionProvider(responder=analysis_responder(plan_size=6))
    services = _services(tmp_path, provider, plan_size=6, sleep=cancelling_sleep)
    holder["services"] = services
    store = await connected_orders_store(tmp_path / "orders.db")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "failed"
    assert job.error_message == CANCELLED_MESSAGE
    assert job.cancel_requested is True
    assert job.questions_completed == 4
    assert len(job.findings) == 4
    assert await services.analysis.cancel(job_id, tenant_id=tenant_id) is False


@pytest.mark.asyncio
async def test_analysis_refuses_to_start_below_minimum_credits(tmp_path) -> None:
    provider = FakeCompletionProvider(responder=analysis_responder())
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-broke")
    await services.ledger.set_monthly_budget(tenant_id, 0.40)
    try:
        with pytest.raises(InsufficientCreditsError) as excinfo:
            await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
    finally:
        await store.disconnect()

    assert excinfo.value.remaining == pytest.approx(0.40)
    assert "Need at least $0.50" in str(excinfo.value)
    assert await _job_count(tenant_id) == 0
    assert provider.calls == []


@pytest.mark.asyncio
async def test_analysis_budget_is_clamped_to_remaining_credits(tmp_path) -> None:
    provider = FakeCompletionProvider(responder=analysis_responder(plan="[]"))
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-clamp")
    await services.ledger.set_monthly_budget(tenant_id, 1.0)
    try:
        job_id = await services.analysis.start(
            tenant_id=tenant_id, project_id="p1", data_store=store, requested_budget=5.0
        )
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.credits_budget == pytest.approx(1.0)
    assert job.status == "completed"
    assert job.total_questions_planned == 0
    assert job.executive_summary == NO_INSIGHTS_SUMMARY
    # Only the plan call was made; an empty run never asks for a summary.
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_failed_step_is_recorded_and_job_continues(tmp_path) -> None:
    def query_for(question: str):
        if question.startswith("Question 2"):
            return query_reply('DROP TABLE "orders"')
        if question.startswith("Question 3"):
            return query_reply('SELECT * FROM "orders" WHERE "region" = \'nowhere\'')
        return query_reply(REVENUE_BY_REGION_SQL)

    provider = FakeCompletionProvider(responder=analysis_responder(plan_size=3, query=query_for))
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-steps")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        job = await services.analysis.get_job(tenant_id, job_id)
        queries = await services.analysis.get_job_queries(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "completed"
    assert [finding.status for finding in job.findings] == ["success", "error", "no_results"]
    assert "forbidden keyword: DROP" in (job.findings[1].error or "")
    # Only successful steps with rows are stored as background queries.
    assert len(queries) == 1


@pytest.mark.asyncio
async def test_plan_failure_marks_job_failed(tmp_path) -> None:
    provider = FakeCompletionProvider(configured=False)
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-noplan")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "failed"
    assert job.error_message == "Completion provider API key not configured"
    assert await services.analysis.get_active_jobs(tenant_id) == []


@pytest.mark.asyncio
async def test_summary_failure_falls_back_to_generic_text(tmp_path) -> None:
    provider = FakeCompletionProvider(
        responder=analysis_responder(plan_size=1, summary=RuntimeError("overloaded"))
    )
    services = _services(tmp_path, provider)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-summary")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "completed"
    assert job.executive_summary == FALLBACK_SUMMARY


@pytest.mark.asyncio
async def test_summary_without_insights_skips_provider() -> None:
    provider = FakeCompletionProvider()
    summary = await generate_executive_summary(provider, [])
    assert summary.text == NO_INSIGHTS_SUMMARY
    assert provider.calls == []


@pytest.mark.asyncio
async def test_task_mode_returns_before_job_finishes(tmp_path) -> None:
    provider = FakeCompletionProvider(responder=analysis_responder(plan_size=2))
    services = _services(tmp_path, provider, mode="task")
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-task")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        assert job_id in services.analysis.dispatcher.pending()
        await services.analysis.dispatcher.wait(job_id)
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await services.aclose()
        await store.disconnect()

    assert job is not None
    assert job.status == "completed"
    assert services.analysis.dispatcher.pending() == []


@pytest.mark.asyncio
async def test_shutdown_marks_running_job_interrupted(tmp_path) -> None:
    blocked = asyncio.Event()

    async def blocking_sleep(_seconds: float) -> None:
        blocked.set()
        await asyncio.Event().wait()

    provider = FakeCompletionProvider(responder=analysis_responder(plan_size=3))
    services = _services(tmp_path, provider, mode="task", sleep=blocking_sleep)
    store = await connected_orders_store(tmp_path / "orders.db")
    tenant_id = unique_id("t-shutdown")
    try:
        job_id = await services.analysis.start(tenant_id=tenant_id, project_id="p1", data_store=store)
        await asyncio.wait_for(blocked.wait(), timeout=5)
        await services.analysis.dispatcher.shutdown()
        job = await services.analysis.get_job(tenant_id, job_id)
    finally:
        await store.disconnect()

    assert job is not None
    assert job.status == "failed"
    assert job.error_message == INTERRUPTED_MESSAGE
    assert job.questions_completed == 1

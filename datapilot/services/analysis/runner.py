from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.core.config import Settings, get_settings
from datapilot.datastores.base import DataStore
from datapilot.domain.analysis import Finding, GeneratedInsight, PlanQuestion
from datapilot.persistence.repos import insights as insights_repo
from datapilot.persistence.repos import jobs as jobs_repo
from datapilot.persistence.repos import queries as queries_repo
from datapilot.providers.llm.base import CompletionProvider
from datapilot.services.analysis.planner import generate_analysis_plan, generate_executive_summary
from datapilot.services.ask import AskService
from datapilot.services.credits import CreditLedger, UsagePurpose
from datapilot.services.insights import InsightGenerator
from datapilot.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Cancelled by user"
INTERRUPTED_MESSAGE = "Analysis interrupted before completion"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobContext:
    job_id: str
    tenant_id: str
    project_id: str
    credits_budget: float
    data_store: DataStore
    schema_context: str | None = None


@dataclass
class _RunState:
    credits_used: float = 0.0
    findings: list[Finding] = field(default_factory=list)
    insights: list[GeneratedInsight] = field(default_factory=list)

    def findings_payload(self) -> list[dict[str, Any]]:
        return [finding.model_dump(mode="json") for finding in self.findings]


class JobCancellations:
    """In-process cancellation flags keyed by job id.

    The persisted cancel_requested column is the durable signal; these flags only
    let a cancel in the same process skip the database round trip.
    """

    def __init__(self) -> None:
        self._flags: dict[str, asyncio.Event] = {}

    def register(self, job_id: str) -> None:
        self._flags.setdefault(job_id, asyncio.Event())

    def request(self, job_id: str) -> bool:
        flag = self._flags.get(job_id)
        if flag is None:
            return False
        flag.set()
        return True

    def is_set(self, job_id: str) -> bool:
        flag = self._flags.get(job_id)
        return flag is not None and flag.is_set()

    def discard(self, job_id: str) -> None:
        self._flags.pop(job_id, None)


class AnalysisRunner:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        provider: CompletionProvider,
        ask_service: AskService,
        insight_generator: InsightGenerator,
        ledger: CreditLedger,
        cancellations: JobCancellations,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        time_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._provider = provider
        self._ask = ask_service
        self._insights = insight_generator
        self._ledger = ledger
        self._cancellations = cancellations
        self._settings = settings or get_settings()
        # Injected so tests can run the loop without real inter-step delays.
        self._sleep = sleep
        self._time_provider = time_provider or _utc_now

    async def run(self, context: JobContext) -> None:
        job_id = context.job_id
        state = _RunState()
        try:
            await self._update(job_id, status="running", started_at=self._time_provider())
            if await self._is_cancelled(job_id):
                await self._finish(job_id, state, status="failed", error_message=CANCELLED_MESSAGE)
                return

            schema_context = context.schema_context
            if schema_context is None:
                schema_context = await context.data_store.gather_schema_context()

            plan = await generate_analysis_plan(self._provider, schema_context, settings=self._settings)
            state.credits_used += await self._charge(
                context.tenant_id, plan.input_tokens, plan.output_tokens, "background_analysis"
            )
            await self._update(
                job_id,
                total_questions_planned=len(plan.questions),
                credits_used=state.credits_used,
            )

            total = len(plan.questions)
            for index, item in enumerate(plan.questions):
                if await self._is_cancelled(job_id):
                    logger.info("analysis_cancelled job_id=%s step=%s", job_id, index)
                    await self._finish(job_id, state, status="failed", error_message=CANCELLED_MESSAGE)
                    return
                # Budget is checked before a step, never mid-step, so one step may overshoot it.
                if state.credits_used >= context.credits_budget:
                    logger.info(
                        "analysis_paused_credits job_id=%s used=%.4f budget=%.4f",
                        job_id,
                        state.credits_used,
                        context.credits_budget,
                    )
                    await self._finish(job_id, state, status="paused_credits")
                    return

                state.findings.append(
                    await self._run_step(context, schema_context, index, item, state)
                )
                await self._update(
                    job_id,
                    questions_completed=len(state.findings),
                    credits_used=state.credits_used,
                    findings_json=state.findings_payload(),
                )
                if index < total - 1:
                    await self._sleep(self._settings.analysis_step_delay_ms / 1000.0)

            summary = await generate_executive_summary(
                self._provider, state.insights, settings=self._settings
            )
            state.credits_used += await self._charge(
                context.tenant_id, summary.input_tokens, summary.output_tokens, "insights"
            )
            await self._finish(job_id, state, status="completed", executive_summary=summary.text)
        except asyncio.CancelledError:
            # Process shutdown: leave a terminal row so the concurrency cap frees up.
            await self._finish(job_id, state, status="failed", error_message=INTERRUPTED_MESSAGE)
            raise
        except Exception as exc:  # noqa: BLE001 - persist the failure for polling clients
            logger.exception("analysis_failed job_id=%s", job_id)
            await self._finish(
                job_id, state, status="failed", error_message=str(exc) or type(exc).__name__
            )
        finally:
            self._cancellations.discard(job_id)

    async def _run_step(
        self,
        context: JobContext,
        schema_context: str,
        index: int,
        item: PlanQuestion,
        state: _RunState,
    ) -> Finding:
        base = {"question_index": index, "question": item.question, "rationale": item.rationale}
        try:
            # Background steps never read or write the query cache.
            result = await self._ask.ask(
                context.data_store, item.question, schema_context=schema_context
            )
            state.credits_used += await self._charge(
                context.tenant_id, result.input_tokens, result.output_tokens, "insights"
            )
            if not result.success:
                return Finding(**base, status="error", error=result.error)
            if not result.rows:
                return Finding(
                    **base,
                    status="no_results",
                    visualization_type=result.visualization_type,
                )

            async with self._session_factory() as session:
                query = await queries_repo.create_query(
                    session,
                    tenant_id=context.tenant_id,
                    project_id=context.project_id,
                    question=item.question,
                    result=result.model_copy(update={"source": "background"}),
                    source="background",
                    background_job_id=context.job_id,
                )
                await session.commit()

            batch = await self._insights.generate(
                question=item.question,
                sql=result.sql,
                columns=result.columns,
                rows=result.rows,
                schema_context=schema_context,
            )
            state.credits_used += await self._charge(
                context.tenant_id, batch.input_tokens, batch.output_tokens, "insights"
            )
            if batch.insights:
                async with self._session_factory() as session:
                    insights_repo.create_insights(
                        session,
                        tenant_id=context.tenant_id,
                        project_id=context.project_id,
                        query_id=query.id,
                        insights=batch.insights,
                        source="background_analysis",
                    )
                    await session.commit()
                state.insights.extend(batch.insights)
            return Finding(
                **base,
                status="success",
                query_id=query.id,
                visualization_type=result.visualization_type,
                row_count=result.row_count,
                insight_count=len(batch.insights),
            )
        except Exception as exc:  # noqa: BLE001 - a failed step never fails the job
            logger.warning("analysis_step_failed job_id=%s step=%s error=%s", context.job_id, index, exc)
            return Finding(**base, status="error", error=str(exc) or type(exc).__name__)

    async def _charge(
        self, tenant_id: str, input_tokens: int, output_tokens: int, purpose: UsagePurpose
    ) -> float:
        if not input_tokens and not output_tokens:
            return 0.0
        await self._ledger.track_usage(tenant_id, input_tokens, output_tokens, purpose)
        return self._ledger.cost_of(input_tokens, output_tokens)

    async def _is_cancelled(self, job_id: str) -> bool:
        if self._cancellations.is_set(job_id):
            return True
        async with self._session_factory() as session:
            return await jobs_repo.is_cancel_requested(session, job_id)

    async def _update(self, job_id: str, **values: Any) -> None:
        async with self._session_factory() as session:
            await jobs_repo.update_job(session, job_id, **values)
            await session.commit()

    async def _finish(self, job_id: str, state: _RunState, *, status: str, **values: Any) -> None:
        increment_counter(f"analysis_jobs_total.{status}")
        logger.info(
            "analysis_finished job_id=%s status=%s steps=%s credits_used=%.4f",
            job_id,
            status,
            len(state.findings),
            state.credits_used,
        )
        await self._update(
            job_id,
            status=status,
            credits_used=state.credits_used,
            questions_completed=len(state.findings),
            findings_json=state.findings_payload(),
            completed_at=self._time_provider(),
            **values,
        )

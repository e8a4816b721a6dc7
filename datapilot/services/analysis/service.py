from __future__ import annotations

import logging
from typing import Callable
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from datapilot.core.config import Settings, get_settings
from datapilot.core.errors import InsufficientCreditsError
from datapilot.datastores.base import DataStore
from datapilot.domain.analysis import Finding, JobQueryRecord, JobSnapshot, ResultSummary
from datapilot.domain.models import BackgroundJob
from datapilot.persistence.repos import insights as insights_repo
from datapilot.persistence.repos import jobs as jobs_repo
from datapilot.persistence.repos import queries as queries_repo
from datapilot.services.analysis.dispatch import AnalysisDispatcher
from datapilot.services.analysis.runner import JobCancellations, JobContext
from datapilot.services.credits import CreditLedger


logger = logging.getLogger(__name__)


def _snapshot(job: BackgroundJob, *, insight_count: int | None = None) -> JobSnapshot:
    # Findings are stored as JSON; rehydrate them into typed records for callers.
    return JobSnapshot(
        id=job.id,
        tenant_id=job.tenant_id,
        project_id=job.project_id,
        status=job.status,
        credits_budget=float(job.credits_budget or 0.0),
        credits_used=float(job.credits_used or 0.0),
        total_questions_planned=job.total_questions_planned or 0,
        questions_completed=job.questions_completed or 0,
        findings=[Finding.model_validate(item) for item in job.findings_json or []],
        executive_summary=job.executive_summary,
        error_message=job.error_message,
        cancel_requested=bool(job.cancel_requested),
        insight_count=insight_count,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


class BackgroundAnalysisService:
    def __init__(
        self,
        *,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: CreditLedger,
        dispatcher: AnalysisDispatcher,
        cancellations: JobCancellations,
        settings: Settings | None = None,
        id_factory: Callable[[], str] | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._cancellations = cancellations
        self._settings = settings or get_settings()
        self._id_factory = id_factory or (lambda: uuid4().hex)

    @property
    def dispatcher(self) -> AnalysisDispatcher:
        return self._dispatcher

    async def start(
        self,
        *,
        tenant_id: str,
        project_id: str,
        data_store: DataStore,
        requested_budget: float | None = None,
        schema_context: str | None = None,
    ) -> str:
        # Refuse before any row exists so a rejected start leaves no trace.
        usage = await self._ledger.get_current_usage(tenant_id)
        remaining = usage.remaining
        minimum = self._settings.analysis_min_credits_usd
        if remaining < minimum:
            raise InsufficientCreditsError(
                f"Insufficient credits. Need at least ${minimum:.2f}, have ${remaining:.2f}",
                remaining=remaining,
            )
        budget = requested_budget if requested_budget is not None else self._settings.analysis_default_budget_usd
        budget = min(budget, remaining)

        job_id = self._id_factory()
        async with self._session_factory() as session:
            await jobs_repo.create_job(
                session,
                job_id=job_id,
                tenant_id=tenant_id,
                project_id=project_id,
                credits_budget=budget,
            )
            await session.commit()
        if self._dispatcher.mode != "queue":
            # Queued jobs run in the worker process, which only sees the persisted flag.
            self._cancellations.register(job_id)
        logger.info(
            "analysis_started tenant_id=%s project_id=%s job_id=%s budget=%.4f",
            tenant_id,
            project_id,
            job_id,
            budget,
        )
        await self._dispatcher.submit(
            JobContext(
                job_id=job_id,
                tenant_id=tenant_id,
                project_id=project_id,
                credits_budget=budget,
                data_store=data_store,
                schema_context=schema_context,
            )
        )
        return job_id

    async def cancel(self, job_id: str, *, tenant_id: str) -> bool:
        # Persist the request so a worker in another process also sees it.
        async with self._session_factory() as session:
            persisted = await jobs_repo.request_cancel(session, tenant_id, job_id)
            await session.commit()
        if persisted:
            self._cancellations.request(job_id)
        logger.info("analysis_cancel_requested job_id=%s found=%s", job_id, persisted)
        return persisted

    async def get_job(self, tenant_id: str, job_id: str) -> JobSnapshot | None:
        async with self._session_factory() as session:
            job = await jobs_repo.get_job(session, tenant_id, job_id)
        return _snapshot(job) if job is not None else None

    async def get_jobs_for_project(self, tenant_id: str, project_id: str) -> list[JobSnapshot]:
        async with self._session_factory() as session:
            jobs = await jobs_repo.list_jobs_for_project(session, tenant_id, project_id)
        return [_snapshot(job) for job in jobs]

    async def get_active_jobs(self, tenant_id: str) -> list[JobSnapshot]:
        async with self._session_factory() as session:
            jobs = await jobs_repo.list_active_jobs(session, tenant_id)
        return [_snapshot(job) for job in jobs]

    async def get_recent_completed_jobs(self, tenant_id: str, *, limit: int = 5) -> list[JobSnapshot]:
        async with self._session_factory() as session:
            jobs = await jobs_repo.list_recent_finished_jobs(session, tenant_id, limit=limit)
            counts = await insights_repo.count_job_insights(session, tenant_id, [job.id for job in jobs])
        return [_snapshot(job, insight_count=counts.get(job.id, 0)) for job in jobs]

    async def get_job_queries(self, tenant_id: str, job_id: str) -> list[JobQueryRecord]:
        async with self._session_factory() as session:
            rows = await queries_repo.list_job_queries(session, tenant_id, job_id)
        return [
            JobQueryRecord(
                id=query.id,
                question=query.question,
                generated_sql=query.generated_sql,
                explanation=query.explanation,
                visualization_type=query.visualization_type,
                status=query.status,
                execution_time_ms=query.execution_time_ms,
                result_summary=ResultSummary.model_validate(query.result_summary_json or {}),
                insight_count=int(insight_count),
                created_at=query.created_at,
            )
            for query, insight_count in rows
        ]

from __future__ import annotations

from typing import Any

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from datapilot.domain.analysis import ACTIVE_JOB_STATUSES, FINISHED_JOB_STATUSES
from datapilot.domain.models import BackgroundJob


async def create_job(
    session: AsyncSession,
    *,
    job_id: str,
    tenant_id: str,
    project_id: str,
    credits_budget: float,
) -> BackgroundJob:
    job = BackgroundJob(
        id=job_id,
        tenant_id=tenant_id,
        project_id=project_id,
        status="queued",
        credits_budget=credits_budget,
        credits_used=0.0,
        total_questions_planned=0,
        questions_completed=0,
        findings_json=[],
        cancel_requested=False,
    )
    session.add(job)
    return job


async def get_job(session: AsyncSession, tenant_id: str, job_id: str) -> BackgroundJob | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(BackgroundJob).where(BackgroundJob.id == job_id, BackgroundJob.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def list_jobs_for_project(
    session: AsyncSession, tenant_id: str, project_id: str
) -> list[BackgroundJob]:
    result = await session.execute(
        select(BackgroundJob)
        .where(BackgroundJob.tenant_id == tenant_id, BackgroundJob.project_id == project_id)
        .order_by(BackgroundJob.created_at.desc(), BackgroundJob.id)
    )
    return list(result.scalars().all())


async def list_active_jobs(session: AsyncSession, tenant_id: str) -> list[BackgroundJob]:
    result = await session.execute(
        select(BackgroundJob)
        .where(
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(BackgroundJob.created_at.desc(), BackgroundJob.id)
    )
    return list(result.scalars().all())


async def list_recent_finished_jobs(
    session: AsyncSession, tenant_id: str, *, limit: int = 5
) -> list[BackgroundJob]:
    result = await session.execute(
        select(BackgroundJob)
        .where(
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status.in_(FINISHED_JOB_STATUSES),
        )
        .order_by(BackgroundJob.completed_at.desc(), BackgroundJob.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def update_job(session: AsyncSession, job_id: str, **values: Any) -> None:
    # Write named columns only; a concurrent cancel_requested flag must never be overwritten.
    await session.execute(update(BackgroundJob).where(BackgroundJob.id == job_id).values(**values))


async def request_cancel(session: AsyncSession, tenant_id: str, job_id: str) -> bool:
    result = await session.execute(
        update(BackgroundJob)
        .where(
            BackgroundJob.id == job_id,
            BackgroundJob.tenant_id == tenant_id,
            BackgroundJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .values(cancel_requested=True)
    )
    return bool(result.rowcount)


async def is_cancel_requested(session: AsyncSession, job_id: str) -> bool:
    result = await session.execute(
        select(BackgroundJob.cancel_requested).where(BackgroundJob.id == job_id)
    )
    return bool(result.scalar_one_or_none())

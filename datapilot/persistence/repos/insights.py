from __future__ import annotations

from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from datapilot.domain.analysis import GeneratedInsight
from datapilot.domain.models import Insight, Query


def create_insights(
    session: AsyncSession,
    *,
    tenant_id: str,
    project_id: str,
    query_id: str | None,
    insights: list[GeneratedInsight],
    source: str,
) -> list[Insight]:
    rows = [
        Insight(
            id=uuid4().hex,
            tenant_id=tenant_id,
            project_id=project_id,
            query_id=query_id,
            insight_type=insight.type,
            severity=insight.severity,
            title=insight.title,
            description=insight.description,
            evidence_json=insight.evidence,
            source=source,
        )
        for insight in insights
    ]
    session.add_all(rows)
    return rows


async def list_query_insights(session: AsyncSession, tenant_id: str, query_id: str) -> list[Insight]:
    result = await session.execute(
        select(Insight)
        .where(Insight.tenant_id == tenant_id, Insight.query_id == query_id)
        .order_by(Insight.created_at, Insight.id)
    )
    return list(result.scalars().all())


async def count_job_insights(
    session: AsyncSession, tenant_id: str, job_ids: list[str]
) -> dict[str, int]:
    # Count insights per job via the queries each job produced.
    if not job_ids:
        return {}
    result = await session.execute(
        select(Query.background_job_id, func.count(Insight.id))
        .join(Insight, Insight.query_id == Query.id)
        .where(Query.tenant_id == tenant_id, Query.background_job_id.in_(job_ids))
        .group_by(Query.background_job_id)
    )
    return {job_id: int(count) for job_id, count in result.all()}

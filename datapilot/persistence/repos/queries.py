from __future__ import annotations

from typing import Any
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from datapilot.domain.models import Insight, Query
from datapilot.domain.state import AskResult

_SAMPLE_ROWS = 5


def result_summary(result: AskResult) -> dict[str, Any]:
    # Persist a compact summary; full result sets stay in the tenant store.
    return {
        "row_count": result.row_count,
        "column_names": list(result.columns),
        "sample_rows": result.rows[:_SAMPLE_ROWS],
    }


async def create_query(
    session: AsyncSession,
    *,
    tenant_id: str,
    project_id: str,
    question: str,
    result: AskResult,
    source: str,
    background_job_id: str | None = None,
) -> Query:
    # Record answered questions, failed ones included, so history shows what was tried.
    query = Query(
        id=uuid4().hex,
        tenant_id=tenant_id,
        project_id=project_id,
        question=question,
        generated_sql=result.sql or None,
        explanation=result.explanation or None,
        assumptions=result.assumptions or None,
        visualization_type=result.visualization_type,
        visualization_description=result.visualization or None,
        columns_json=list(result.columns),
        result_summary_json=result_summary(result),
        execution_time_ms=result.query_time_ms,
        status="success" if result.success else "error",
        error_type=result.error_type,
        error_message=result.error,
        source=source,
        background_job_id=background_job_id,
    )
    session.add(query)
    return query


async def get_query(session: AsyncSession, tenant_id: str, query_id: str) -> Query | None:
    # Return None for tenant mismatch to keep 404 semantics.
    result = await session.execute(
        select(Query).where(Query.id == query_id, Query.tenant_id == tenant_id)
    )
    return result.scalar_one_or_none()


async def list_job_queries(
    session: AsyncSession, tenant_id: str, job_id: str
) -> list[tuple[Query, int]]:
    # Oldest first so results read in plan order, each with its insight count.
    insight_counts = (
        select(Insight.query_id, func.count(Insight.id).label("insight_count"))
        .where(Insight.tenant_id == tenant_id)
        .group_by(Insight.query_id)
        .subquery()
    )
    result = await session.execute(
        select(Query, func.coalesce(insight_counts.c.insight_count, 0))
        .outerjoin(insight_counts, insight_counts.c.query_id == Query.id)
        .where(Query.tenant_id == tenant_id, Query.background_job_id == job_id)
        .order_by(Query.created_at.asc(), Query.id)
    )
    return [(row[0], int(row[1] or 0)) for row in result.all()]

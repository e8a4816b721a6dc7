from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from datapilot.apps.api.deps import Principal, get_services, resolve_data_store
from datapilot.apps.api.errors import ask_error_status
from datapilot.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from datapilot.apps.api.rate_limit import rate_limited
from datapilot.apps.api.response import SuccessEnvelope, success_response
from datapilot.domain.state import AskResult
from datapilot.services.container import Services
from datapilot.services.interactive import InteractiveAskFlow


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/projects", tags=["ask"], responses=DEFAULT_ERROR_RESPONSES)


class ConversationTurn(BaseModel):
    question: str
    sql: str | None = None


class AskRequest(BaseModel):
    question: str = Field(min_length=1, max_length=2000)
    conversation_context: list[ConversationTurn] | None = Field(default=None, max_length=10)
    timeout_ms: int | None = Field(default=None, ge=1000, le=120000)

    # Reject unknown fields so tenant_id cannot be supplied in the payload.
    model_config = {"extra": "forbid"}


class AskResponse(BaseModel):
    query_id: str | None
    source: str
    explanation: str
    assumptions: str
    sql: str
    visualization: str
    visualization_type: str
    columns: list[str]
    column_types: dict[str, str]
    rows: list[dict[str, Any]]
    row_count: int
    truncated: bool
    query_time_ms: int | None


def _to_response(result: AskResult, query_id: str | None) -> AskResponse:
    return AskResponse(
        query_id=query_id,
        source=result.source,
        explanation=result.explanation,
        assumptions=result.assumptions,
        sql=result.sql,
        visualization=result.visualization,
        visualization_type=result.visualization_type,
        columns=result.columns,
        column_types=result.column_types,
        rows=result.rows,
        row_count=result.row_count,
        truncated=result.truncated,
        query_time_ms=result.query_time_ms,
    )


def _ask_failure(result: AskResult) -> HTTPException:
    # Keep the parsed reply on validation failures so users can see what was rejected.
    detail: dict[str, Any] = {
        "code": result.error_type or "server_error",
        "message": result.error or "Request failed",
    }
    if result.error_type == "sql_validation_error":
        detail.update(
            explanation=result.explanation,
            assumptions=result.assumptions,
            sql=result.sql,
        )
    return HTTPException(status_code=ask_error_status(result.error_type), detail=detail)


async def _generate_insights(flow: InteractiveAskFlow, **kwargs: Any) -> None:
    try:
        count = await flow.generate_insights_for(**kwargs)
    except Exception:  # noqa: BLE001 - the response has already been sent
        logger.exception("post_response_insights_failed query_id=%s", kwargs.get("query_id"))
        return
    logger.info("post_response_insights query_id=%s count=%s", kwargs.get("query_id"), count)


@router.post("/{project_id}/ask", response_model=SuccessEnvelope[AskResponse])
async def ask_question(
    project_id: str,
    payload: AskRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(rate_limited("query")),
    services: Services = Depends(get_services),
) -> dict:
    data_store = await resolve_data_store(services, principal, project_id)
    answer = await services.interactive.answer(
        tenant_id=principal.tenant_id,
        project_id=project_id,
        question=payload.question,
        data_store=data_store,
        conversation_context=(
            [turn.model_dump() for turn in payload.conversation_context]
            if payload.conversation_context
            else None
        ),
        timeout_ms=payload.timeout_ms,
    )
    result = answer.result
    if not result.success:
        raise _ask_failure(result)
    # Cached answers already have insights from the original run.
    if answer.query_id and not answer.cached and result.rows:
        background_tasks.add_task(
            _generate_insights,
            services.interactive,
            tenant_id=principal.tenant_id,
            project_id=project_id,
            query_id=answer.query_id,
            question=payload.question,
            result=result,
            schema_context=answer.schema_context,
        )
    return success_response(request=request, data=_to_response(result, answer.query_id))

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field

from datapilot.apps.api.deps import Principal, get_principal, get_services, resolve_data_store
from datapilot.apps.api.openapi import ANALYSIS_ERROR_RESPONSES, DEFAULT_ERROR_RESPONSES
from datapilot.apps.api.rate_limit import rate_limited
from datapilot.apps.api.response import SuccessEnvelope, success_response
from datapilot.core.errors import JobNotFoundError
from datapilot.datastores.base import NO_TABLES_MARKER
from datapilot.domain.analysis import JobQueryRecord, JobSnapshot
from datapilot.services.container import Services


logger = logging.getLogger(__name__)
router = APIRouter(tags=["analysis"], responses=DEFAULT_ERROR_RESPONSES)


class StartAnalysisRequest(BaseModel):
    budget: float | None = Field(default=None, gt=0, le=100)

    model_config = {"extra": "forbid"}


class StartAnalysisResponse(BaseModel):
    job_id: str
    status: str


class CancelAnalysisResponse(BaseModel):
    job_id: str
    cancelled: bool


@router.post(
    "/projects/{project_id}/analysis",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=SuccessEnvelope[StartAnalysisResponse],
    responses=ANALYSIS_ERROR_RESPONSES,
)
async def start_analysis(
    project_id: str,
    request: Request,
    payload: StartAnalysisRequest | None = None,
    principal: Principal = Depends(rate_limited("background_analysis")),
    services: Services = Depends(get_services),
) -> dict:
    # Return a handle immediately; progress is read by polling the job.
    concurrency = await services.rate_limiter.check_concurrent_jobs(principal.tenant_id)
    if not concurrency.allowed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "TOO_MANY_JOBS",
                "message": f"Maximum {concurrency.max} concurrent analysis jobs allowed",
                "current": concurrency.current,
                "max": concurrency.max,
            },
        )
    data_store = await resolve_data_store(services, principal, project_id)
    schema_context = await data_store.gather_schema_context()
    if NO_TABLES_MARKER in schema_context:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "no_data", "message": "Upload data before starting an analysis."},
        )
    job_id = await services.analysis.start(
        tenant_id=principal.tenant_id,
        project_id=project_id,
        data_store=data_store,
        requested_budget=payload.budget if payload else None,
        schema_context=schema_context,
    )
    return success_response(
        request=request, data=StartAnalysisResponse(job_id=job_id, status="queued")
    )


@router.get(
    "/projects/{project_id}/analysis",
    response_model=SuccessEnvelope[list[JobSnapshot]],
)
async def list_project_jobs(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    jobs = await services.analysis.get_jobs_for_project(principal.tenant_id, project_id)
    return success_response(request=request, data=jobs)


@router.get("/analysis/jobs/active", response_model=SuccessEnvelope[list[JobSnapshot]])
async def list_active_jobs(
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    jobs = await services.analysis.get_active_jobs(principal.tenant_id)
    return success_response(request=request, data=jobs)


@router.get("/analysis/jobs/recent", response_model=SuccessEnvelope[list[JobSnapshot]])
async def list_recent_jobs(
    request: Request,
    limit: int = Query(default=5, ge=1, le=50),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    jobs = await services.analysis.get_recent_completed_jobs(principal.tenant_id, limit=limit)
    return success_response(request=request, data=jobs)


@router.get("/analysis/jobs/{job_id}", response_model=SuccessEnvelope[JobSnapshot])
async def get_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    job = await services.analysis.get_job(principal.tenant_id, job_id)
    if job is None:
        # Use 404 to avoid leaking cross-tenant job existence.
        raise JobNotFoundError("Analysis job not found")
    return success_response(request=request, data=job)


@router.post("/analysis/jobs/{job_id}/cancel", response_model=SuccessEnvelope[CancelAnalysisResponse])
async def cancel_job(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    cancelled = await services.analysis.cancel(job_id, tenant_id=principal.tenant_id)
    if not cancelled:
        raise JobNotFoundError("No running analysis job with this id")
    return success_response(
        request=request, data=CancelAnalysisResponse(job_id=job_id, cancelled=True)
    )


@router.get("/analysis/jobs/{job_id}/queries", response_model=SuccessEnvelope[list[JobQueryRecord]])
async def list_job_queries(
    job_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    job = await services.analysis.get_job(principal.tenant_id, job_id)
    if job is None:
        raise JobNotFoundError("Analysis job not found")
    queries = await services.analysis.get_job_queries(principal.tenant_id, job_id)
    return success_response(request=request, data=queries)

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from datapilot.apps.api.deps import Principal, get_principal, get_services
from datapilot.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from datapilot.apps.api.response import SuccessEnvelope, success_response
from datapilot.services.container import Services

router = APIRouter(tags=["cache"], responses=DEFAULT_ERROR_RESPONSES)


class CacheInvalidationResponse(BaseModel):
    project_id: str
    entries_removed: int


class CacheStatsResponse(BaseModel):
    entries: int
    total_hits: int
    last_cached_at: datetime | None


@router.delete("/projects/{project_id}/cache", response_model=SuccessEnvelope[CacheInvalidationResponse])
async def invalidate_project_cache(
    project_id: str,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    # Called after uploads, refreshes and deletes so answers reflect the new data.
    removed = await services.cache.invalidate_project(project_id, tenant_id=principal.tenant_id)
    await services.data_stores.invalidate(principal.tenant_id, project_id)
    return success_response(
        request=request,
        data=CacheInvalidationResponse(project_id=project_id, entries_removed=removed),
    )


@router.get("/cache/stats", response_model=SuccessEnvelope[CacheStatsResponse])
async def cache_stats(
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    stats = await services.cache.stats(principal.tenant_id)
    return success_response(
        request=request,
        data=CacheStatsResponse(
            entries=stats.entries,
            total_hits=stats.total_hits,
            last_cached_at=stats.last_cached_at,
        ),
    )

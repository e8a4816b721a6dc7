from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from datapilot.apps.api.deps import get_services
from datapilot.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from datapilot.apps.api.response import SuccessEnvelope, success_response
from datapilot.services.container import Services
from datapilot.services.telemetry import availability, counters_snapshot, external_success_rate

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    provider: str
    provider_configured: bool
    analysis_mode: str
    active_analysis_runners: int
    availability: float | None = None
    provider_success_rate: float | None = None
    counters: dict[str, int]


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, services: Services = Depends(get_services)) -> dict:
    # Report degraded rather than down when only the completion provider is missing.
    configured = services.provider.is_configured()
    payload = HealthResponse(
        status="ok" if configured else "degraded",
        provider=services.provider.name,
        provider_configured=configured,
        analysis_mode=services.analysis.dispatcher.mode,
        active_analysis_runners=services.analysis.dispatcher.bulkhead.active,
        availability=availability(300),
        provider_success_rate=external_success_rate(services.provider.name, 300),
        counters=counters_snapshot(),
    )
    return success_response(request=request, data=payload)

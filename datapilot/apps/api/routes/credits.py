from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from datapilot.apps.api.deps import Principal, get_principal, get_services
from datapilot.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from datapilot.apps.api.response import SuccessEnvelope, success_response
from datapilot.services.container import Services
from datapilot.services.credits import CreditSnapshot

router = APIRouter(prefix="/credits", tags=["credits"], responses=DEFAULT_ERROR_RESPONSES)


class CreditUsageResponse(BaseModel):
    period_start: datetime
    allocated: float
    used: float
    remaining: float
    query_count: int
    background_analysis_count: int


class MonthlyBudgetRequest(BaseModel):
    amount: float = Field(ge=0, le=100000)

    model_config = {"extra": "forbid"}


def _to_response(snapshot: CreditSnapshot) -> CreditUsageResponse:
    return CreditUsageResponse(
        period_start=snapshot.period_start,
        allocated=round(snapshot.allocated, 6),
        used=round(snapshot.used, 6),
        remaining=round(snapshot.remaining, 6),
        query_count=snapshot.query_count,
        background_analysis_count=snapshot.background_analysis_count,
    )


@router.get("/usage", response_model=SuccessEnvelope[CreditUsageResponse])
async def get_usage(
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    snapshot = await services.ledger.get_current_usage(principal.tenant_id)
    return success_response(request=request, data=_to_response(snapshot))


@router.get("/history", response_model=SuccessEnvelope[list[CreditUsageResponse]])
async def get_history(
    request: Request,
    months: int = Query(default=12, ge=1, le=36),
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    history = await services.ledger.get_usage_history(principal.tenant_id, months)
    return success_response(request=request, data=[_to_response(item) for item in history])


@router.put("/budget", response_model=SuccessEnvelope[CreditUsageResponse])
async def set_budget(
    payload: MonthlyBudgetRequest,
    request: Request,
    principal: Principal = Depends(get_principal),
    services: Services = Depends(get_services),
) -> dict:
    snapshot = await services.ledger.set_monthly_budget(principal.tenant_id, payload.amount)
    return success_response(request=request, data=_to_response(snapshot))

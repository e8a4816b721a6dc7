from __future__ import annotations

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel

from datapilot.datastores.base import DataStore
from datapilot.services.container import Services


class Principal(BaseModel):
    # Capture the caller identity used for tenant scoping.
    subject_id: str
    tenant_id: str
    auth_method: str = "dev_bypass"


def get_services(request: Request) -> Services:
    # Services are built once in the app lifespan and shared by every request.
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"code": "SERVICE_UNAVAILABLE", "message": "Service is starting up"},
        )
    return services


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


async def get_principal(
    request: Request,
    services: Services = Depends(get_services),
) -> Principal:
    # Tenant identity comes from a trusted upstream header; authentication lives outside this service.
    if not services.settings.auth_dev_bypass:
        raise _auth_error("Tenant header authentication is disabled")
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    if not tenant_id:
        raise _auth_error("X-Tenant-Id header is required")
    return Principal(subject_id=f"tenant-{tenant_id}", tenant_id=tenant_id)


async def resolve_data_store(
    services: Services, principal: Principal, project_id: str
) -> DataStore:
    try:
        return await services.data_stores.get(principal.tenant_id, project_id)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "BAD_REQUEST", "message": str(exc)},
        ) from exc

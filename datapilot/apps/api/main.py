from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from datapilot.apps.api.errors import (
    domain_exception_handler,
    http_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from datapilot.apps.api.response import API_VERSION
from datapilot.apps.api.routes.analysis import router as analysis_router
from datapilot.apps.api.routes.ask import router as ask_router
from datapilot.apps.api.routes.cache import router as cache_router
from datapilot.apps.api.routes.credits import router as credits_router
from datapilot.apps.api.routes.health import router as health_router
from datapilot.core.errors import DataPilotError
from datapilot.core.logging import configure_logging
from datapilot.services.container import Services, build_services
from datapilot.services.maintenance import maintenance_loop
from datapilot.services.telemetry import record_request


logger = logging.getLogger(__name__)


def create_app(services: Services | None = None) -> FastAPI:
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Build services once per process unless a caller injected them.
        owned = getattr(app.state, "services", None) is None
        if owned:
            app.state.services = build_services()
        current: Services = app.state.services
        maintenance_task = None
        if current.settings.maintenance_enabled:
            maintenance_task = asyncio.create_task(maintenance_loop(current))
        try:
            yield
        finally:
            if maintenance_task is not None:
                maintenance_task.cancel()
                await asyncio.gather(maintenance_task, return_exceptions=True)
            if owned:
                await current.aclose()

    app = FastAPI(title="DataPilot API", version=API_VERSION, lifespan=lifespan)
    if services is not None:
        app.state.services = services

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        record_request(
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=(time.monotonic() - start) * 1000.0,
        )
        response.headers.setdefault("X-Request-Id", request_id)
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(DataPilotError)
    async def _domain_exception_handler(request: Request, exc: DataPilotError):
        return await domain_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    # Mount versioned v1 API routes.
    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(ask_router, prefix=f"/{API_VERSION}")
    app.include_router(analysis_router, prefix=f"/{API_VERSION}")
    app.include_router(cache_router, prefix=f"/{API_VERSION}")
    app.include_router(credits_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()

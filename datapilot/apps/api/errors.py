from __future__ import annotations

import logging
from typing import Any

from fastapi import HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from datapilot.apps.api.response import error_response
from datapilot.core.errors import (
    DataPilotError,
    DataStoreError,
    InsufficientCreditsError,
    JobNotFoundError,
    ProviderConfigError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "INSUFFICIENT_CREDITS",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "rate_limit_exceeded",
    500: "INTERNAL_ERROR",
    502: "UPSTREAM_ERROR",
    503: "SERVICE_UNAVAILABLE",
    504: "TIMEOUT",
}

# Transport mapping for tagged ask failures.
ASK_ERROR_STATUS: dict[str, int] = {
    "configuration_error": 503,
    "schema_error": 500,
    "no_data": 400,
    "api_error": 502,
    "sql_validation_error": 422,
    "timeout_error": 504,
    "sql_execution_error": 400,
    "server_error": 500,
}


def ask_error_status(error_type: str | None) -> int:
    return ASK_ERROR_STATUS.get(error_type or "server_error", 500)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


async def http_exception_handler(
    request: Request, exc: HTTPException | StarletteHTTPException
) -> JSONResponse:
    code, message, details = _split_detail(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=exc.headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    payload = error_response(
        request=request,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": exc.errors()},
    )
    return JSONResponse(content=payload, status_code=422)


def _domain_status(exc: DataPilotError) -> tuple[int, str, dict[str, Any] | None]:
    if isinstance(exc, InsufficientCreditsError):
        return 402, "INSUFFICIENT_CREDITS", {"remaining": round(exc.remaining, 6)}
    if isinstance(exc, JobNotFoundError):
        return 404, "NOT_FOUND", None
    if isinstance(exc, ProviderConfigError):
        return 503, "configuration_error", None
    if isinstance(exc, DataStoreError):
        return 400, "DATA_STORE_ERROR", None
    return 500, "INTERNAL_ERROR", None


async def domain_exception_handler(request: Request, exc: DataPilotError) -> JSONResponse:
    status_code, code, details = _domain_status(exc)
    payload = error_response(request=request, code=code, message=str(exc), details=details)
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    payload = error_response(request=request, code="INTERNAL_ERROR", message="Internal server error")
    return JSONResponse(content=payload, status_code=500)

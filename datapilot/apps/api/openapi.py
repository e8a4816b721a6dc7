from __future__ import annotations

from typing import Any

from datapilot.apps.api.response import API_VERSION, ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    # Build a consistent error envelope example for OpenAPI docs.
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": API_VERSION},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, *, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {
            "application/json": {
                "example": _error_example(code=code, message=message, details=details),
            }
        },
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response("Bad request", code="BAD_REQUEST", message="Bad request"),
    401: _response("Missing tenant", code="AUTH_UNAUTHORIZED", message="X-Tenant-Id header is required"),
    404: _response("Not found", code="NOT_FOUND", message="Resource not found"),
    422: _response("Validation error", code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    429: _response(
        "Rate limited",
        code="rate_limit_exceeded",
        message="Rate limit exceeded. Please try again later.",
        details={"endpoint": "query", "reset_at": "2025-01-01T00:01:00+00:00"},
    ),
    500: _response("Internal server error", code="INTERNAL_ERROR", message="Internal server error"),
    503: _response("Service unavailable", code="SERVICE_UNAVAILABLE", message="Service unavailable"),
}

ANALYSIS_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    402: _response(
        "Insufficient credits",
        code="INSUFFICIENT_CREDITS",
        message="Insufficient credits. Need at least $0.50, have $0.40",
        details={"remaining": 0.4},
    ),
    409: _response(
        "Too many concurrent jobs",
        code="TOO_MANY_JOBS",
        message="Maximum 3 concurrent analysis jobs allowed",
        details={"current": 3, "max": 3},
    ),
}

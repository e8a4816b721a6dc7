from __future__ import annotations

import logging
import math
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Response, status

from datapilot.apps.api.deps import Principal, get_principal, get_services
from datapilot.services.container import Services
from datapilot.services.rate_limit import RateLimitDecision


logger = logging.getLogger(__name__)


def _reset_epoch(decision: RateLimitDecision) -> str:
    reset_at = decision.reset_at or datetime.now(timezone.utc)
    return str(int(reset_at.timestamp()))


def _throttle_exception(*, endpoint: str, decision: RateLimitDecision) -> HTTPException:
    # Construct a stable 429 response with retry hints for clients.
    retry_after_s = 0
    if decision.reset_at is not None:
        retry_after_s = max(
            int(math.ceil((decision.reset_at - datetime.now(timezone.utc)).total_seconds())), 0
        )
    return HTTPException(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        detail={
            "code": "rate_limit_exceeded",
            "message": "Rate limit exceeded. Please try again later.",
            "endpoint": endpoint,
            "reset_at": decision.reset_at.isoformat() if decision.reset_at else None,
        },
        headers={
            "Retry-After": str(retry_after_s),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": _reset_epoch(decision),
        },
    )


def rate_limited(endpoint: str):
    # Dependency factory applying the fixed-window limit for one endpoint family.
    async def _dependency(
        response: Response,
        principal: Principal = Depends(get_principal),
        services: Services = Depends(get_services),
    ) -> Principal:
        if not services.settings.rate_limit_enabled:
            return principal
        decision = await services.rate_limiter.check_limit(principal.tenant_id, endpoint)
        if decision.degraded:
            response.headers["X-RateLimit-Status"] = "degraded"
            logger.warning("rate_limit_degraded endpoint=%s", endpoint)
            return principal
        if not decision.allowed:
            raise _throttle_exception(endpoint=endpoint, decision=decision)
        if decision.remaining is not None:
            response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
            response.headers["X-RateLimit-Reset"] = _reset_epoch(decision)
        return principal

    return _dependency

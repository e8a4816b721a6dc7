from __future__ import annotations

import asyncio

import pytest

from datapilot.core.errors import CompletionProviderError, ProviderAuthError
from datapilot.services.resilience import Bulkhead, RetryPolicy, retry_async
from datapilot.services.telemetry import counters_snapshot


@pytest.mark.asyncio
async def test_retry_async_retries_transient() -> None:
    calls = {"count": 0}

    async def flaky() -> str:
        calls["count"] += 1
        if calls["count"] < 2:
            raise TimeoutError("timeout")
        return "ok"

    result = await retry_async(
        flaky,
        policy=RetryPolicy(timeout_ms=100, max_attempts=2, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 2
    assert counters_snapshot().get("external_retries_total") == 1


@pytest.mark.asyncio
async def test_retry_async_retries_provider_overload() -> None:
    calls = {"count": 0}

    async def overloaded() -> str:
        calls["count"] += 1
        if calls["count"] < 3:
            raise CompletionProviderError("overloaded", status_code=529)
        return "ok"

    result = await retry_async(
        overloaded,
        policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1),
    )
    assert result == "ok"
    assert calls["count"] == 3


@pytest.mark.asyncio
async def test_retry_async_does_not_retry_auth_failures() -> None:
    calls = {"count": 0}

    async def unauthorized() -> str:
        calls["count"] += 1
        raise ProviderAuthError("bad key", status_code=401)

    with pytest.raises(ProviderAuthError):
        await retry_async(
            unauthorized,
            policy=RetryPolicy(timeout_ms=100, max_attempts=3, backoff_ms=1),
        )
    assert calls["count"] == 1


@pytest.mark.asyncio
async def test_bulkhead_caps_concurrency() -> None:
    bulkhead = Bulkhead("analysis", 2)
    peak = {"value": 0}
    release = asyncio.Event()

    async def work() -> None:
        peak["value"] = max(peak["value"], bulkhead.active)
        await release.wait()

    tasks = [asyncio.create_task(bulkhead.run(work)) for _ in range(4)]
    await asyncio.sleep(0.01)
    assert bulkhead.active == 2
    release.set()
    await asyncio.gather(*tasks)
    assert peak["value"] == 2
    assert bulkhead.active == 0

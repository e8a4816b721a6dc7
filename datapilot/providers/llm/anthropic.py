from __future__ import annotations

import asyncio
import logging
import time

import httpx

from datapilot.core.config import Settings, get_settings
from datapilot.core.errors import (
    CompletionProviderError,
    ProviderAuthError,
    ProviderConfigError,
    ProviderRateLimitError,
)
from datapilot.providers.llm.base import CompletionResult
from datapilot.services.resilience import RetryPolicy, retry_async
from datapilot.services.telemetry import increment_counter, record_external_call

logger = logging.getLogger(__name__)


def _is_retryable(exc: Exception) -> bool:
    # Retry dropped connections, throttling and provider-side 5xx responses.
    if isinstance(exc, (asyncio.TimeoutError, httpx.TransportError)):
        return True
    status = getattr(exc, "status_code", None)
    return isinstance(status, int) and (status >= 500 or status == 429)


class AnthropicProvider:
    name = "anthropic"

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        # Tests swap in httpx.MockTransport; production uses the default network transport.
        self._transport = transport

    def is_configured(self) -> bool:
        return bool(self._settings.anthropic_api_key)

    def _validate_config(self) -> tuple[str, str]:
        # Fail fast to avoid confusing downstream HTTP errors.
        if not self._settings.anthropic_api_key:
            raise ProviderConfigError("Anthropic config missing: set ANTHROPIC_API_KEY in .env.")
        return self._settings.anthropic_api_key, self._settings.anthropic_model

    def _policy(self) -> RetryPolicy:
        return RetryPolicy(
            timeout_ms=self._settings.llm_timeout_ms,
            max_attempts=self._settings.llm_max_attempts,
            backoff_ms=self._settings.llm_backoff_ms,
        )

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        api_key, model = self._validate_config()
        payload = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "system": system_prompt,
            "messages": [{"role": "user", "content": user_message}],
        }
        headers = {
            "x-api-key": api_key,
            "anthropic-version": self._settings.anthropic_version,
            "content-type": "application/json",
        }

        async def _call() -> CompletionResult:
            return await self._post(payload, headers)

        start = time.monotonic()
        try:
            result = await retry_async(_call, policy=self._policy(), retryable=_is_retryable)
        except (CompletionProviderError, ProviderConfigError):
            record_external_call(
                integration=self.name,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise
        except (asyncio.TimeoutError, httpx.HTTPError) as exc:
            record_external_call(
                integration=self.name,
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            logger.warning("anthropic_request_failed model=%s error=%s", model, type(exc).__name__)
            raise CompletionProviderError("Anthropic request failed") from exc
        record_external_call(
            integration=self.name,
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=True,
        )
        increment_counter("llm_calls_total")
        return result

    async def _post(self, payload: dict, headers: dict[str, str]) -> CompletionResult:
        url = f"{self._settings.anthropic_base_url.rstrip('/')}/v1/messages"
        async with httpx.AsyncClient(transport=self._transport) as client:
            response = await client.post(url, json=payload, headers=headers)
        if response.status_code in {401, 403}:
            raise ProviderAuthError("Anthropic rejected the API key", status_code=response.status_code)
        if response.status_code == 429:
            raise ProviderRateLimitError("Anthropic rate limit exceeded", status_code=429)
        if response.status_code != 200:
            logger.warning(
                "anthropic_http_error status=%s body=%s", response.status_code, response.text[:200]
            )
            raise CompletionProviderError(
                f"Anthropic API error ({response.status_code})", status_code=response.status_code
            )
        data = response.json()
        text = "".join(
            block.get("text", "") for block in data.get("content", []) if block.get("type") == "text"
        )
        usage = data.get("usage") or {}
        return CompletionResult(
            text=text,
            input_tokens=int(usage.get("input_tokens") or 0),
            output_tokens=int(usage.get("output_tokens") or 0),
        )

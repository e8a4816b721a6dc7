from __future__ import annotations

import asyncio
import logging
import time

from datapilot.core.config import Settings, get_settings
from datapilot.core.errors import CompletionProviderError, ProviderAuthError, ProviderConfigError
from datapilot.providers.llm.base import CompletionResult
from datapilot.services.telemetry import increment_counter, record_external_call

logger = logging.getLogger(__name__)


class GeminiVertexProvider:
    name = "vertex"

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()

    def is_configured(self) -> bool:
        return bool(
            self._settings.google_cloud_project
            and self._settings.google_cloud_location
            and self._settings.gemini_model
        )

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(
                f"Vertex config missing: set {', '.join(missing)} in .env."
            )
        return project, location, model

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        project, location, model_name = self._validate_config()
        timeout_s = max(1.0, self._settings.llm_timeout_ms / 1000.0)
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                asyncio.to_thread(
                    self._generate,
                    project,
                    location,
                    model_name,
                    system_prompt,
                    user_message,
                    max_tokens,
                    temperature,
                ),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("vertex_complete_timeout model=%s", model_name)
            record_external_call(
                integration=self.name, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise CompletionProviderError("Vertex request timed out") from exc
        except (ProviderConfigError, CompletionProviderError):
            record_external_call(
                integration=self.name, latency_ms=(time.monotonic() - start) * 1000.0, success=False
            )
            raise
        record_external_call(
            integration=self.name, latency_ms=(time.monotonic() - start) * 1000.0, success=True
        )
        increment_counter("llm_calls_total")
        return result

    def _generate(
        self,
        project: str,
        location: str,
        model_name: str,
        system_prompt: str,
        user_message: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        try:
            from vertexai import init
            from vertexai.generative_models import GenerationConfig, GenerativeModel
            from google.auth.exceptions import DefaultCredentialsError, RefreshError
            from google.api_core.exceptions import PermissionDenied, Unauthenticated
        except Exception as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError(
                "Vertex AI SDK not available. Install google-cloud-aiplatform."
            ) from exc

        try:
            logger.info("vertex_complete_start model=%s", model_name)
            init(project=project, location=location)
            model = GenerativeModel(model_name, system_instruction=system_prompt)
            response = model.generate_content(
                user_message,
                generation_config=GenerationConfig(
                    max_output_tokens=max_tokens,
                    temperature=temperature,
                ),
            )
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_complete_auth_error model=%s", model_name)
            raise ProviderAuthError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except Exception as exc:
            logger.error("vertex_complete_error model=%s", model_name)
            raise CompletionProviderError(
                "Vertex AI request failed. Check credentials and model access."
            ) from exc

        usage = getattr(response, "usage_metadata", None)
        return CompletionResult(
            text=getattr(response, "text", "") or "",
            input_tokens=int(getattr(usage, "prompt_token_count", 0) or 0),
            output_tokens=int(getattr(usage, "candidates_token_count", 0) or 0),
        )

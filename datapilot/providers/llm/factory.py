from __future__ import annotations

from datapilot.core.config import Settings, get_settings
from datapilot.providers.llm.anthropic import AnthropicProvider
from datapilot.providers.llm.base import CompletionProvider
from datapilot.providers.llm.fake import FakeCompletionProvider
from datapilot.providers.llm.gemini_vertex import GeminiVertexProvider


def get_completion_provider(settings: Settings | None = None) -> CompletionProvider:
    settings = settings or get_settings()
    provider = (settings.llm_provider or "anthropic").lower()

    if provider == "fake":
        return FakeCompletionProvider()
    if provider == "vertex":
        return GeminiVertexProvider(settings)
    return AnthropicProvider(settings)

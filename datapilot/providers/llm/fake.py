from __future__ import annotations

from collections import deque
from typing import Callable, Iterable

from datapilot.providers.llm.base import CompletionResult


Responder = Callable[[str, str], "str | CompletionResult"]


class FakeCompletionProvider:
    name = "fake"

    def __init__(
        self,
        responses: Iterable[str | CompletionResult | Exception] | None = None,
        *,
        responder: Responder | None = None,
        configured: bool = True,
        default_text: str = "This is a fake response.",
        input_tokens: int = 100,
        output_tokens: int = 50,
    ) -> None:
        # Scripted replies keep tests deterministic without external calls.
        self._responses = deque(responses or [])
        self._responder = responder
        self._configured = configured
        self._default_text = default_text
        self._input_tokens = input_tokens
        self._output_tokens = output_tokens
        self.calls: list[dict[str, object]] = []

    def is_configured(self) -> bool:
        return self._configured

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "user_message": user_message,
                "max_tokens": max_tokens,
                "temperature": temperature,
            }
        )
        if self._responder is not None:
            reply: str | CompletionResult | Exception = self._responder(system_prompt, user_message)
        elif self._responses:
            reply = self._responses.popleft()
        else:
            reply = self._default_text
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, CompletionResult):
            return reply
        return CompletionResult(
            text=reply,
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
        )

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class CompletionResult:
    text: str
    input_tokens: int = 0
    output_tokens: int = 0


class CompletionProvider(Protocol):
    name: str

    def is_configured(self) -> bool:
        ...

    async def complete(
        self,
        system_prompt: str,
        user_message: str,
        *,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        ...

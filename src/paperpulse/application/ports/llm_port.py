"""ChatCompletionPort: the LLM endpoint the analysis services call."""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from paperpulse.domain.llm import ChatCompletion


@runtime_checkable
class ChatCompletionPort(Protocol):
    model: str

    def is_configured(self) -> bool: ...

    async def complete(
        self,
        *,
        system: str,
        user: str,
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 4000,
    ) -> ChatCompletion: ...

"""Chat-completion reply as seen by the analysis services."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any

from paperpulse.domain.errors import LLMResponseError


def strip_code_fence(content: str) -> str:
    text = (content or "").strip()
    if text.startswith("```json"):
        text = text[7:]
    elif text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    return text.strip()


@dataclass
class ChatCompletion:
    content: str
    model: str
    tokens_used: int = 0

    def json(self) -> Any:
        """Parse the reply as JSON after removing a markdown fence."""
        try:
            return json.loads(strip_code_fence(self.content))
        except ValueError as e:
            raise LLMResponseError(f"Failed to parse LLM response as JSON: {e}") from e

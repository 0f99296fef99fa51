"""
OpenRouter chat-completion client.

API docs: https://openrouter.ai/docs
"""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Any, Dict, Optional

import aiohttp

from paperpulse.domain.errors import LLMNotConfiguredError, LLMResponseError
from paperpulse.domain.llm import ChatCompletion

logger = logging.getLogger(__name__)

OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"
DEFAULT_MODEL = "moonshotai/kimi-k2.5"
JSON_MODE_PREFIXES = ("openai/", "google/", "anthropic/")
TIMEOUT_SECONDS = 120


def supports_json_mode(model: str) -> bool:
    return any(model.startswith(prefix) for prefix in JSON_MODE_PREFIXES)


class OpenRouterClient:
    """Thin async client; one instance per worker process."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        *,
        timeout: int = TIMEOUT_SECONDS,
        app_url: Optional[str] = None,
    ):
        self.api_key = api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY", "")
        self.model = model or os.getenv("OPENROUTER_MODEL") or DEFAULT_MODEL
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._app_url = app_url or os.getenv("PAPERPULSE_APP_URL", "http://localhost:3000")
        self._session: Optional[aiohttp.ClientSession] = None

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def complete(
        self,
        *,
        system: str,
        user: str,
        model: Optional[str] = None,
        temperature: float = 0.0,
        max_tokens: int = 4000,
    ) -> ChatCompletion:
        if not self.api_key:
            raise LLMNotConfiguredError("OpenRouter API key not configured")

        use_model = model or self.model
        body: Dict[str, Any] = {
            "model": use_model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if supports_json_mode(use_model):
            body["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self._app_url,
            "X-Title": "PaperPulse",
        }
        logger.info("LLM call model=%s max_tokens=%d", use_model, max_tokens)

        session = await self._get_session()
        try:
            async with session.post(OPENROUTER_API_URL, json=body, headers=headers) as resp:
                if resp.status != 200:
                    text = await resp.text()
                    raise LLMResponseError(
                        f"OpenRouter API error: {resp.status} - {text[:500]}", status=resp.status
                    )
                data = await resp.json(content_type=None)
        except asyncio.TimeoutError as e:
            raise LLMResponseError(f"OpenRouter request timed out after {self._timeout.total}s") from e

        choices = data.get("choices") or []
        content = ((choices[0] if choices else {}).get("message") or {}).get("content")
        if not content:
            raise LLMResponseError("No content in OpenRouter response")

        usage = data.get("usage") or {}
        tokens = int(usage.get("total_tokens") or 0)
        logger.info(
            "LLM response tokens=%d (prompt=%s, completion=%s)",
            tokens, usage.get("prompt_tokens", "?"), usage.get("completion_tokens", "?"),
        )
        return ChatCompletion(content=content, model=data.get("model") or use_model, tokens_used=tokens)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

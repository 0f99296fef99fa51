"""
Shared async HTTP client for the third-party JSON APIs.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import ClientTimeout

from paperpulse.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)


class APIClient:
    """Async JSON client with a minimum request interval and 429/5xx backoff."""

    USER_AGENT = "ResearchAggregator/1.0"

    def __init__(
        self,
        base_url: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        timeout: int = 30,
        request_interval: float = 1.0,
        max_retries: int = 2,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = ClientTimeout(total=timeout)
        self.request_interval = request_interval
        self.max_retries = max_retries
        self._headers = {"User-Agent": self.USER_AGENT, "Accept": "application/json", **(headers or {})}
        self._last_request_time = 0.0
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self.timeout, headers=self._headers)
        return self._session

    async def _wait_for_rate_limit(self) -> None:
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self.request_interval:
            await asyncio.sleep(self.request_interval - elapsed)
        self._last_request_time = time.monotonic()

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Send a request, retrying 429/5xx and timeouts with exponential backoff."""
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        last_status = 0

        for attempt in range(self.max_retries + 1):
            await self._wait_for_rate_limit()
            session = await self._get_session()
            try:
                async with session.request(method, url, params=params, json=json_data) as response:
                    last_status = response.status
                    if response.status == 200:
                        return await response.json(content_type=None)
                    if response.status == 404:
                        logger.warning("Resource not found: %s", url)
                        return {}
                    if response.status == 429 or response.status >= 500:
                        retry_after = response.headers.get("Retry-After")
                        await response.read()
                        if attempt >= self.max_retries:
                            break
                        delay = _backoff(attempt, retry_after)
                        logger.warning(
                            "HTTP %s for %s, retry %d/%d in %.1fs",
                            response.status, url, attempt + 1, self.max_retries, delay,
                        )
                        await asyncio.sleep(delay)
                        continue
                    text = await response.text()
                    logger.error("API error %s from %s: %s", response.status, url, text[:200])
                    raise ExternalServiceError(f"API error: {response.status}", status=response.status)
            except asyncio.TimeoutError:
                if attempt >= self.max_retries:
                    logger.error("Request timeout after %d attempts: %s", self.max_retries + 1, url)
                    raise
                delay = _backoff(attempt, None)
                logger.warning("Timeout for %s, retry %d/%d in %.1fs", url, attempt + 1, self.max_retries, delay)
                await asyncio.sleep(delay)

        raise ExternalServiceError(
            f"HTTP {last_status} after {self.max_retries + 1} attempts: {url}", status=last_status
        )

    async def get(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("GET", endpoint, params=params)

    async def post(self, endpoint: str, json_data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.request("POST", endpoint, json_data=json_data)

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None


def _backoff(attempt: int, retry_after: Optional[str]) -> float:
    if retry_after:
        try:
            return min(float(retry_after), 30.0)
        except (TypeError, ValueError):
            pass
    delay = 2.0 * (2 ** attempt)
    # ±25% jitter
    jitter = delay * 0.25 * (2 * random.random() - 1)
    return max(1.0, delay + jitter)

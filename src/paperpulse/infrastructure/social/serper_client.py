"""
Serper news search (https://serper.dev/).
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from paperpulse.infrastructure.api_clients.base import APIClient

logger = logging.getLogger(__name__)

SERPER_API = "https://google.serper.dev"
_NON_WORD = re.compile(r"[^\w\s]")


def url_hash(url: str) -> str:
    return hashlib.sha256((url or "").lower().encode("utf-8")).hexdigest()[:16]


def _source_from_url(url: str) -> str:
    host = urlparse(url).hostname or ""
    host = host[4:] if host.startswith("www.") else host
    return host[:1].upper() + host[1:] if host else "Unknown"


class SerperNewsClient(APIClient):
    def __init__(self, api_key: Optional[str] = None):
        self.api_key = api_key if api_key is not None else os.getenv("SERPER_API_KEY", "")
        super().__init__(
            SERPER_API,
            headers={"X-API-KEY": self.api_key, "Content-Type": "application/json"},
            request_interval=0.2,
        )

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def search_news(self, query: str, *, limit: int = 5) -> List[Dict[str, Any]]:
        data = await self.post("/news", json_data={"q": query, "num": limit, "tbs": "qdr:m"})
        articles = []
        for item in data.get("news") or []:
            link = item.get("link") or ""
            if not link:
                continue
            articles.append(
                {
                    "title": item.get("title") or "",
                    "snippet": item.get("snippet") or "",
                    "url": link,
                    "source": item.get("source") or _source_from_url(link),
                    "date": item.get("date"),
                    "url_hash": url_hash(link),
                }
            )
        return articles

    async def search_for_paper(self, title: str, arxiv_id: str) -> List[Dict[str, Any]]:
        found: List[Dict[str, Any]] = []
        seen = set()
        queries = [f"arxiv {arxiv_id}"]
        title_query = _NON_WORD.sub(" ", (title or "")[:80]).strip()
        if len(title_query) > 20:
            queries.append(f'"{title_query}"')
        for query in queries:
            for article in await self.search_news(query):
                if article["url_hash"] in seen:
                    continue
                seen.add(article["url_hash"])
                found.append(article)
        return found

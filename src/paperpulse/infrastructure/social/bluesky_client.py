"""
Bluesky post search over the public AppView API (no auth required).

API docs: https://docs.bsky.app/docs/api/app-bsky-feed-search-posts
"""

from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from paperpulse.infrastructure.api_clients.base import APIClient

logger = logging.getLogger(__name__)

BSKY_PUBLIC_API = "https://public.api.bsky.app"
_NON_WORD = re.compile(r"[^\w\s]")


def content_hash(content: str, author: str) -> str:
    normalized = f"{author}:{(content or '').lower().strip()}"
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:16]


def _post_url(uri: str, handle: str) -> str:
    # at://did:plc:xxx/app.bsky.feed.post/<id>
    return f"https://bsky.app/profile/{handle}/post/{uri.rsplit('/', 1)[-1]}"


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = value[:-1] + "+00:00" if value.endswith("Z") else value
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class BlueskyClient(APIClient):
    platform = "bluesky"

    def __init__(self, *, request_interval: float = 0.5):
        super().__init__(BSKY_PUBLIC_API, request_interval=request_interval)

    async def search_posts(self, query: str, *, limit: int = 25) -> List[Dict[str, Any]]:
        data = await self.get(
            "/xrpc/app.bsky.feed.searchPosts",
            params={"q": query, "limit": str(limit), "sort": "latest"},
        )
        mentions = []
        for post in data.get("posts") or []:
            author = post.get("author") or {}
            record = post.get("record") or {}
            handle = author.get("handle") or ""
            text = record.get("text") or ""
            mentions.append(
                {
                    "platform": self.platform,
                    "external_id": post.get("uri") or "",
                    "author_handle": handle,
                    "author_name": author.get("displayName") or handle,
                    "content": text,
                    "url": _post_url(post.get("uri") or "", handle),
                    "likes": int(post.get("likeCount") or 0),
                    "reposts": int(post.get("repostCount") or 0),
                    "replies": int(post.get("replyCount") or 0),
                    "posted_at": _parse_time(record.get("createdAt")),
                    "content_hash": content_hash(text, handle),
                }
            )
        return [m for m in mentions if m["external_id"]]

    async def search_for_paper(self, title: str, arxiv_id: str) -> List[Dict[str, Any]]:
        """Posts citing the arXiv id, then posts matching the first 50 title chars."""
        found: List[Dict[str, Any]] = []
        seen = set()
        queries = [arxiv_id]
        title_query = _NON_WORD.sub(" ", (title or "")[:50]).strip()
        if len(title_query) > 10:
            queries.append(title_query)
        for query in queries:
            for post in await self.search_posts(query, limit=10):
                if post["content_hash"] in seen:
                    continue
                seen.add(post["content_hash"])
                found.append(post)
        return found

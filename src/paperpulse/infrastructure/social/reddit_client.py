"""
Reddit search over the public JSON endpoints (no auth required).
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from paperpulse.infrastructure.api_clients.base import APIClient
from paperpulse.infrastructure.social.bluesky_client import content_hash

logger = logging.getLogger(__name__)

REDDIT_API = "https://www.reddit.com"
TITLE_SUBREDDIT = "MachineLearning"
_NON_WORD = re.compile(r"[^\w\s]")


class RedditClient(APIClient):
    platform = "reddit"

    def __init__(self, *, request_interval: float = 1.0):
        super().__init__(REDDIT_API, request_interval=request_interval)

    async def search_posts(
        self, query: str, *, subreddit: Optional[str] = None, limit: int = 25
    ) -> List[Dict[str, Any]]:
        params = {"q": query, "sort": "relevance", "t": "month", "limit": str(limit), "type": "link"}
        endpoint = "/search.json"
        if subreddit:
            params["restrict_sr"] = "true"
            endpoint = f"/r/{subreddit}/search.json"

        data = await self.get(endpoint, params=params)
        posts = []
        for child in (data.get("data") or {}).get("children") or []:
            post = child.get("data") or {}
            author = post.get("author") or ""
            content = post.get("selftext") or post.get("title") or ""
            created = post.get("created_utc")
            posts.append(
                {
                    "platform": self.platform,
                    "external_id": post.get("id") or "",
                    "author_handle": author,
                    "author_name": author,
                    "content": content,
                    "url": f"https://reddit.com{post.get('permalink') or ''}",
                    "likes": int(post.get("score") or 0),
                    "reposts": 0,
                    "replies": int(post.get("num_comments") or 0),
                    "posted_at": datetime.fromtimestamp(float(created), tz=timezone.utc) if created else None,
                    "content_hash": content_hash(content[:200], author),
                }
            )
        return [p for p in posts if p["external_id"]]

    async def search_for_paper(self, title: str, arxiv_id: str) -> List[Dict[str, Any]]:
        """Site-wide search by arXiv id, then r/MachineLearning by the first 50 title chars."""
        found: List[Dict[str, Any]] = []
        seen = set()
        batches = [await self.search_posts(arxiv_id, limit=10)]
        title_query = _NON_WORD.sub(" ", (title or "")[:50]).strip()
        if len(title_query) > 10:
            batches.append(await self.search_posts(title_query, subreddit=TITLE_SUBREDDIT, limit=10))
        for batch in batches:
            for post in batch:
                if post["content_hash"] in seen:
                    continue
                seen.add(post["content_hash"])
                found.append(post)
        found.sort(key=lambda p: p["likes"], reverse=True)
        return found

"""
Social and news mention tracking for papers.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from paperpulse.application.ports.mention_source_port import MentionSourcePort
from paperpulse.infrastructure.queue.job_queue import (
    NEWS_FETCH,
    NEWS_FETCH_JOB,
    SOCIAL_MONITOR,
    SOCIAL_MONITOR_JOB,
    JobQueue,
)
from paperpulse.infrastructure.social.serper_client import SerperNewsClient
from paperpulse.infrastructure.stores.mention_store import MentionStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

REFRESH_DAYS = 7
REFRESH_LIMIT = 100
SOCIAL_REFRESH_STAGGER_SECONDS = 3.0
NEWS_REFRESH_STAGGER_SECONDS = 5.0


class SocialMonitorWorkflow:
    """Search each platform for a paper; a failing platform does not stop the others."""

    def __init__(self, platforms: Dict[str, MentionSourcePort], mention_store: MentionStore):
        self._platforms = platforms
        self._mentions = mention_store

    async def monitor(self, paper_id: int, *, arxiv_id: str, title: str) -> Dict[str, Any]:
        result: Dict[str, Any] = {"paper_id": paper_id, "arxiv_id": arxiv_id, "errors": {}}
        for name, client in self._platforms.items():
            result[name] = 0
            try:
                posts = await client.search_for_paper(title, arxiv_id)
            except Exception as e:
                result["errors"][name] = str(e) or type(e).__name__
                logger.exception("%s search failed for %s", name, arxiv_id)
                continue
            for post in posts:
                if self._mentions.add_social_mention(paper_id, post):
                    result[name] += 1
        counts = ", ".join(f"{name}={result[name]}" for name in self._platforms)
        logger.info("Social mentions for %s: %s", arxiv_id, counts)
        return result


class NewsFetchWorkflow:
    def __init__(self, client: SerperNewsClient, mention_store: MentionStore):
        self._client = client
        self._mentions = mention_store

    async def fetch(self, paper_id: int, *, arxiv_id: str, title: str) -> Dict[str, Any]:
        if not self._client.is_configured():
            logger.info("SERPER_API_KEY not configured; news fetch skipped")
            return {"paper_id": paper_id, "arxiv_id": arxiv_id, "news_count": 0, "skipped": True}

        articles = await self._client.search_for_paper(title, arxiv_id)
        added = sum(1 for article in articles if self._mentions.add_news_mention(paper_id, article))
        logger.info("Added %d news articles for %s", added, arxiv_id)
        return {
            "paper_id": paper_id,
            "arxiv_id": arxiv_id,
            "news_count": added,
            "total_found": len(articles),
        }


async def enqueue_mention_refresh(
    paper_store: PaperStore,
    job_queue: JobQueue,
    *,
    days: int = REFRESH_DAYS,
    limit: int = REFRESH_LIMIT,
    stamp: Optional[str] = None,
) -> int:
    """Queue social and news refresh jobs for papers fetched in the last ``days`` days."""
    papers: List[Dict[str, Any]] = paper_store.list_recently_fetched(days=days, limit=limit)
    suffix = f"-{stamp}" if stamp else ""
    for i, paper in enumerate(papers):
        payload = {"paper_id": paper["id"], "arxiv_id": paper["external_id"], "title": paper["title"]}
        await job_queue.enqueue(
            SOCIAL_MONITOR,
            SOCIAL_MONITOR_JOB,
            payload,
            job_id=f"refresh-social-{paper['id']}{suffix}",
            delay_seconds=i * SOCIAL_REFRESH_STAGGER_SECONDS,
        )
        await job_queue.enqueue(
            NEWS_FETCH,
            NEWS_FETCH_JOB,
            payload,
            job_id=f"refresh-news-{paper['id']}{suffix}",
            delay_seconds=i * NEWS_REFRESH_STAGGER_SECONDS,
        )
    Logger.info(f"Queued mention refresh for {len(papers)} papers", file=LogFiles.QUEUE)
    return len(papers)

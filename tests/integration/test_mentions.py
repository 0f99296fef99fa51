from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("arq", reason="arq not installed")

from paperpulse.application.workflows.mentions import (
    NewsFetchWorkflow,
    SocialMonitorWorkflow,
    enqueue_mention_refresh,
)
from paperpulse.infrastructure.queue.job_queue import NEWS_FETCH, SOCIAL_MONITOR, JobQueue
from paperpulse.infrastructure.social.serper_client import url_hash
from paperpulse.infrastructure.stores.mention_store import MentionStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from tests.fakes import FakeRedis, make_record


class _Platform:
    def __init__(self, posts=None, error=None):
        self.posts = posts or []
        self.error = error

    async def search_for_paper(self, title, arxiv_id):
        if self.error:
            raise self.error
        return self.posts

    async def close(self):
        pass


class _News(_Platform):
    def __init__(self, articles=None, configured=True):
        super().__init__(articles)
        self.configured = configured

    def is_configured(self):
        return self.configured


def _post(platform, external_id):
    return {
        "platform": platform,
        "external_id": external_id,
        "author_handle": "someone",
        "content": f"Nice paper {external_id}",
        "url": f"https://{platform}.example/{external_id}",
        "likes": 3,
    }


def _article(url):
    return {"title": "Coverage", "snippet": "...", "url": url, "source": "example.com", "url_hash": url_hash(url)}


@pytest.fixture
def paper(db_url):
    store = PaperStore(db_url)
    return store, store.insert_paper(make_record("2401.00001"))


@pytest.mark.asyncio
async def test_social_monitor_counts_new_posts_per_platform(db_url, paper):
    _, paper_id = paper
    mentions = MentionStore(db_url)
    workflow = SocialMonitorWorkflow(
        {
            "bluesky": _Platform([_post("bluesky", "a"), _post("bluesky", "b")]),
            "reddit": _Platform(error=RuntimeError("reddit down")),
        },
        mentions,
    )

    first = await workflow.monitor(paper_id, arxiv_id="2401.00001", title="Paper")
    again = await workflow.monitor(paper_id, arxiv_id="2401.00001", title="Paper")

    assert first["bluesky"] == 2
    assert first["reddit"] == 0
    assert first["errors"] == {"reddit": "reddit down"}
    assert again["bluesky"] == 0
    assert mentions.count_social(paper_id) == 2
    assert mentions.count_social(paper_id, "bluesky") == 2


@pytest.mark.asyncio
async def test_news_fetch_dedupes_by_url(db_url, paper):
    _, paper_id = paper
    mentions = MentionStore(db_url)
    url = "https://news.example/story"
    workflow = NewsFetchWorkflow(_News([_article(url), _article("https://news.example/other")]), mentions)

    result = await workflow.fetch(paper_id, arxiv_id="2401.00001", title="Paper")
    assert result["news_count"] == 2
    assert (await workflow.fetch(paper_id, arxiv_id="2401.00001", title="Paper"))["news_count"] == 0
    assert [n["url"] for n in mentions.list_news(paper_id)] == [url, "https://news.example/other"]


@pytest.mark.asyncio
async def test_news_fetch_skipped_without_key(db_url, paper):
    _, paper_id = paper
    result = await NewsFetchWorkflow(_News(configured=False), MentionStore(db_url)).fetch(
        paper_id, arxiv_id="2401.00001", title="Paper"
    )
    assert result["skipped"] is True


@pytest.mark.asyncio
async def test_refresh_queues_recent_papers_once_per_day(paper):
    store, paper_id = paper
    store.insert_paper(make_record("2301.00001"), fetched_at=datetime.now(timezone.utc) - timedelta(days=30))
    redis = FakeRedis()
    queue = JobQueue(redis)

    assert await enqueue_mention_refresh(store, queue, stamp="2024-01-15") == 1
    assert [j["job_id"] for j in redis.jobs_on(SOCIAL_MONITOR)] == [f"refresh-social-{paper_id}-2024-01-15"]
    assert [j["job_id"] for j in redis.jobs_on(NEWS_FETCH)] == [f"refresh-news-{paper_id}-2024-01-15"]

    await enqueue_mention_refresh(store, queue, stamp="2024-01-15")
    assert len(redis.enqueued) == 2

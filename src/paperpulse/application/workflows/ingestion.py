"""
Paper ingestion: fetch from the paper source, dedupe, persist, fan out.

Two entry points share the insert path:

- ``ingest_recent``: newest submissions (scheduled runs)
- ``ingest_date``: one submission day across categories, paged through the
  ingestion ledger so a re-run resumes from the stored cursor

A category that fails to fetch is logged and reported; the others still run.
No LLM calls happen here. New papers get a social-monitor job each, and a
summary job while the AI toggle is on.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set

from paperpulse.application.ports.paper_source_port import PaperSourcePort
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.domain.paper import AI_CATEGORIES, CategoryIngestStats, IngestionSummary, PaperRecord
from paperpulse.infrastructure.queue.job_queue import (
    SOCIAL_MONITOR,
    SOCIAL_MONITOR_JOB,
    SUMMARY_GENERATION,
    SUMMARY_JOB,
    JobQueue,
)
from paperpulse.infrastructure.stores.ingestion_run_store import IngestionRunStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

DEFAULT_RECENT_MAX = 100
DEFAULT_PAGE_SIZE = 100
DEFAULT_MAX_PER_CATEGORY = 200
SUMMARY_STAGGER_SECONDS = 1.0
SOCIAL_STAGGER_SECONDS = 2.0


def social_job_id(paper_id: int) -> str:
    return f"social-{paper_id}"


def summary_job_id(paper_id: int) -> str:
    return f"summary-{paper_id}"


class _Deduper:
    """Cross-category dedup by external id; the first encounter wins."""

    def __init__(self):
        self.seen: Set[str] = set()
        self.duplicates = 0

    def take(self, records: Iterable[PaperRecord], category: str) -> List[PaperRecord]:
        fresh = []
        for record in records:
            if not record.external_id:
                continue
            if record.external_id in self.seen:
                self.duplicates += 1
                continue
            self.seen.add(record.external_id)
            if not record.primary_category:
                record.primary_category = category
            fresh.append(record)
        return fresh


class IngestionWorkflow:
    def __init__(
        self,
        source: PaperSourcePort,
        paper_store: PaperStore,
        *,
        run_store: Optional[IngestionRunStore] = None,
        job_queue: Optional[JobQueue] = None,
        runtime_config: Optional[RuntimeConfigService] = None,
    ):
        self._source = source
        self._papers = paper_store
        self._runs = run_store
        self._queue = job_queue
        self._config = runtime_config

    def _insert_new(self, records: List[PaperRecord], summary: IngestionSummary) -> List[PaperRecord]:
        """Insert records not yet stored; returns the inserted ones."""
        existing = self._papers.existing_external_ids(r.external_id for r in records)
        inserted = []
        for record in records:
            if record.external_id in existing:
                summary.existing_skipped += 1
                continue
            paper_id = self._papers.insert_paper(record)
            if paper_id is None:
                # Lost an insert race with another worker
                summary.existing_skipped += 1
                continue
            summary.new_papers += 1
            summary.new_paper_ids.append(paper_id)
            inserted.append(record)
        return inserted

    async def ingest_recent(
        self,
        *,
        categories: Optional[Iterable[str]] = None,
        max_results: int = DEFAULT_RECENT_MAX,
        use_all_ai_categories: bool = True,
        enqueue_followups: bool = True,
    ) -> IngestionSummary:
        summary = IngestionSummary()
        deduper = _Deduper()
        unique: List[PaperRecord] = []

        if use_all_ai_categories and not categories:
            targets = ["all"]
        else:
            targets = list(categories or ["cs.AI"])

        for category in targets:
            if category == "all":
                result = await self._source.fetch_ai_papers(max_results)
            else:
                result = await self._source.fetch_recent(category, max_results)
            stats = summary.by_category.setdefault(category, CategoryIngestStats())
            if not result.success:
                stats.error = result.error
                Logger.warning(f"Fetch failed for {category}: {result.error}", file=LogFiles.INGEST)
                continue
            stats.fetched = len(result.records)
            summary.total_fetched += len(result.records)
            unique.extend(deduper.take(result.records, "cs.AI" if category == "all" else category))

        summary.unique_papers = len(unique)
        summary.duplicates_skipped = deduper.duplicates
        self._insert_new(unique, summary)
        Logger.info(
            f"Recent ingestion: fetched={summary.total_fetched} unique={summary.unique_papers} "
            f"new={summary.new_papers}",
            file=LogFiles.INGEST,
        )
        if enqueue_followups:
            await self.enqueue_followups(summary)
        return summary

    async def ingest_date(
        self,
        day: date,
        *,
        categories: Optional[Iterable[str]] = None,
        max_results_per_category: int = DEFAULT_MAX_PER_CATEGORY,
        page_size: int = DEFAULT_PAGE_SIZE,
        enqueue_followups: bool = False,
    ) -> IngestionSummary:
        run_date = day.isoformat()
        summary = IngestionSummary(date=run_date)
        deduper = _Deduper()
        targets = [c for c in (categories or AI_CATEGORIES)]

        for category in targets:
            stats = summary.by_category.setdefault(category, CategoryIngestStats())
            try:
                await self._ingest_category_day(day, category, summary, deduper, stats, max_results_per_category, page_size)
            except Exception as e:
                # One category failing does not stop the others
                stats.error = str(e) or type(e).__name__
                logger.exception("Ingestion of %s on %s failed", category, run_date)
                if self._runs is not None:
                    self._runs.finish_run(run_date, category, error=stats.error)

        summary.duplicates_skipped = deduper.duplicates
        Logger.info(
            f"Date ingestion {run_date}: fetched={summary.total_fetched} unique={summary.unique_papers} "
            f"new={summary.new_papers} duplicates={summary.duplicates_skipped} existing={summary.existing_skipped}",
            file=LogFiles.BACKFILL,
        )
        if enqueue_followups:
            await self.enqueue_followups(summary)
        return summary

    async def _ingest_category_day(
        self,
        day: date,
        category: str,
        summary: IngestionSummary,
        deduper: _Deduper,
        stats: CategoryIngestStats,
        max_results: int,
        page_size: int,
    ) -> None:
        run_date = day.isoformat()
        cursor = 0
        if self._runs is not None:
            cursor = self._runs.start_run(run_date, category)["cursor"]
        fetched_here = 0

        while fetched_here < max_results:
            result = await self._source.fetch_by_date(
                category, day, max_results=min(page_size, max_results - fetched_here), start=cursor
            )
            if not result.success:
                stats.error = result.error
                Logger.warning(f"{category} on {run_date}: {result.error}", file=LogFiles.BACKFILL)
                if self._runs is not None:
                    self._runs.finish_run(run_date, category, error=result.error)
                return

            page = result.records
            fetched_here += len(page)
            stats.fetched += len(page)
            summary.total_fetched += len(page)
            fresh = deduper.take(page, category)
            summary.unique_papers += len(fresh)
            before = summary.new_papers
            self._insert_new(fresh, summary)
            cursor += len(page)
            if self._runs is not None:
                self._runs.record_progress(
                    run_date,
                    category,
                    expected_total=result.total_results,
                    fetched=cursor,
                    inserted=summary.new_papers - before,
                    cursor=cursor,
                )
            logger.info("%s on %s: page of %d (cursor %d/%d)", category, run_date, len(page), cursor, result.total_results)
            if not page or cursor >= result.total_results:
                break

        if self._runs is not None:
            self._runs.finish_run(run_date, category)

    async def enqueue_followups(self, summary: IngestionSummary) -> Dict[str, int]:
        """One social-monitor job per new paper, plus a summary job while AI is on."""
        counts = {"social": 0, "summary": 0}
        if self._queue is None or not summary.new_paper_ids:
            return counts
        ai_on = self._config is not None and await self._config.get_ai_enabled()

        for i, paper_id in enumerate(summary.new_paper_ids, start=1):
            paper = self._papers.get_paper(paper_id)
            if paper is None:
                continue
            payload: Dict[str, Any] = {
                "paper_id": paper_id,
                "arxiv_id": paper["external_id"],
                "title": paper["title"],
            }
            if await self._queue.enqueue(
                SOCIAL_MONITOR,
                SOCIAL_MONITOR_JOB,
                payload,
                job_id=social_job_id(paper_id),
                delay_seconds=SOCIAL_STAGGER_SECONDS * i,
            ):
                counts["social"] += 1
            if ai_on and await self._queue.enqueue(
                SUMMARY_GENERATION,
                SUMMARY_JOB,
                {**payload, "abstract": paper["abstract"]},
                job_id=summary_job_id(paper_id),
                delay_seconds=SUMMARY_STAGGER_SECONDS * i,
            ):
                counts["summary"] += 1

        Logger.info(
            f"Queued {counts['social']} social-monitor and {counts['summary']} summary jobs",
            file=LogFiles.QUEUE,
        )
        return counts

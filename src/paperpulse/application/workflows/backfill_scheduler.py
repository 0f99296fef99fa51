from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from paperpulse.application.services.backfill import (
    DEFAULT_DELAY_MS,
    DEFAULT_GAP_THRESHOLD,
    DEFAULT_GAP_WINDOW_DAYS,
    BackfillPlan,
    gap_window,
    plan_backfill,
    plan_gap_backfill,
)
from paperpulse.domain.errors import LockNotAcquiredError
from paperpulse.infrastructure.queue.job_queue import BACKFILL, INGEST_DATE_JOB, JobQueue
from paperpulse.infrastructure.redis.lock import hold_lock
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

GAP_SWEEP_LOCK = "gap-sweep"
GAP_SWEEP_LOCK_TTL_MS = 10 * 60 * 1000


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class BackfillScheduler:
    """
    Turns backfill plans into date-based ingestion jobs.

    Every job id is ``ingest-date-<date>``, so overlapping sweeps and manual
    requests never queue the same day twice.
    """

    def __init__(
        self,
        paper_store: PaperStore,
        job_queue: JobQueue,
        *,
        today: Callable[[], date] = _utc_today,
    ):
        self._papers = paper_store
        self._queue = job_queue
        self._today = today

    async def enqueue_plan(self, plan: BackfillPlan, *, followups: bool = False) -> List[Dict[str, Any]]:
        queued = []
        for i, day in enumerate(plan.dates):
            delay_seconds = i * plan.delay_ms / 1000
            job_id = await self._queue.enqueue(
                BACKFILL,
                INGEST_DATE_JOB,
                {"date": day.isoformat(), "categories": plan.categories, "followups": followups},
                job_id=plan.job_id(day),
                delay_seconds=delay_seconds,
            )
            queued.append(
                {
                    "date": day.isoformat(),
                    "job_id": plan.job_id(day),
                    "delay_ms": int(delay_seconds * 1000),
                    "duplicate": job_id is None,
                }
            )
        return queued

    async def backfill_range(
        self,
        start_date: Any,
        end_date: Any,
        *,
        categories: Optional[Iterable[str]] = None,
        delay_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Manual backfill; BackfillRequestError propagates before anything is queued."""
        plan = plan_backfill(start_date, end_date, categories=categories, delay_ms=delay_ms)
        jobs = await self.enqueue_plan(plan)
        Logger.info(
            f"Manual backfill {start_date}..{end_date}: queued {len(jobs)} dates "
            f"(~{plan.estimated_minutes} min)",
            file=LogFiles.BACKFILL,
        )
        return self._response(plan, jobs, start_date, end_date)

    async def backfill_gaps(
        self,
        start_date: Any,
        end_date: Any,
        *,
        threshold: int = DEFAULT_GAP_THRESHOLD,
        categories: Optional[Iterable[str]] = None,
        delay_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        probe = plan_backfill(start_date, end_date, categories=categories, delay_ms=delay_ms)
        counts = self._papers.count_by_published_day(probe.dates[0], probe.dates[-1])
        plan = plan_gap_backfill(
            counts, start_date, end_date, threshold=threshold, categories=categories, delay_ms=delay_ms
        )
        jobs = await self.enqueue_plan(plan)
        Logger.info(
            f"Gap backfill {start_date}..{end_date}: {len(plan.dates)} gap days queued, "
            f"{len(plan.skipped_dates)} days already filled",
            file=LogFiles.BACKFILL,
        )
        response = self._response(plan, jobs, start_date, end_date)
        response["threshold"] = threshold
        response["counts"] = {d.isoformat(): counts.get(d.isoformat(), 0) for d in plan.dates}
        response["skipped_dates"] = [d.isoformat() for d in plan.skipped_dates]
        return response

    async def sweep_gaps(
        self,
        redis,
        *,
        window_days: int = DEFAULT_GAP_WINDOW_DAYS,
        threshold: int = DEFAULT_GAP_THRESHOLD,
        delay_ms: int = DEFAULT_DELAY_MS,
    ) -> Optional[BackfillPlan]:
        """
        Scheduled sweep over the trailing window ending yesterday.

        Runs under a lock so only one replica sweeps at a time. Returns None
        when another replica holds it.
        """
        start, end = gap_window(self._today(), window_days)
        try:
            async with hold_lock(redis, GAP_SWEEP_LOCK, ttl_ms=GAP_SWEEP_LOCK_TTL_MS):
                counts = self._papers.count_by_published_day(start, end)
                plan = plan_gap_backfill(
                    counts,
                    start.isoformat(),
                    end.isoformat(),
                    threshold=threshold,
                    delay_ms=delay_ms,
                )
                await self.enqueue_plan(plan)
        except LockNotAcquiredError:
            logger.info("Gap sweep already running elsewhere; skipped")
            return None
        Logger.info(
            f"Gap sweep {start}..{end}: {len(plan.dates)} gaps "
            f"({', '.join(d.isoformat() for d in plan.dates) or 'none'})",
            file=LogFiles.BACKFILL,
        )
        return plan

    @staticmethod
    def _response(plan: BackfillPlan, jobs: List[Dict[str, Any]], start_date: Any, end_date: Any) -> Dict[str, Any]:
        return {
            "status": "ok",
            "message": f"Queued {len(jobs)} backfill jobs",
            "start_date": start_date,
            "end_date": end_date,
            "categories": plan.categories,
            "total_days": len(plan.dates),
            "delay_ms": plan.delay_ms,
            "estimated_completion_minutes": plan.estimated_minutes,
            "dates": [d.isoformat() for d in plan.dates],
            "jobs": jobs[:10],
            "more_jobs": max(0, len(jobs) - 10),
        }

"""
V3 analysis job: one paper through analyze, persist and batch roll-up.

Model output problems never fail the job (they yield a partial record);
only transport errors propagate to the queue's retry policy. When retries
are exhausted the queue calls ``record_failure`` so the batch still reaches
a terminal count.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Dict, List, Optional

from paperpulse.application.ports.llm_port import ChatCompletionPort
from paperpulse.application.services.paper_analysis_v3 import PaperAnalyzerV3
from paperpulse.domain.analysis_v3 import ANALYSIS_VERSION, cost_cents_for_tokens
from paperpulse.domain.batch import OPEN_JOB_STATUSES
from paperpulse.domain.errors import PaperNotFoundError
from paperpulse.infrastructure.stores.analysis_v3_store import AnalysisV3Store
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)


@dataclass
class V3JobResult:
    paper_id: int
    status: str
    analysis_id: Optional[int] = None
    what_kind: Optional[str] = None
    practical_value_total: int = 0
    tokens_used: int = 0
    cost_cents: int = 0
    model: Optional[str] = None
    batch_completed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class AnalysisV3Job:
    def __init__(
        self,
        llm: ChatCompletionPort,
        *,
        paper_store: PaperStore,
        v3_store: AnalysisV3Store,
        batch_store: BatchStore,
    ):
        self._llm = llm
        self._papers = paper_store
        self._analyses = v3_store
        self._batches = batch_store

    async def run(
        self,
        paper_id: int,
        *,
        force: bool = False,
        batch_job_id: Optional[int] = None,
        model: Optional[str] = None,
        title: Optional[str] = None,
        abstract: Optional[str] = None,
        authors: Optional[List[str]] = None,
        published: Optional[str] = None,
        categories: Optional[List[str]] = None,
    ) -> V3JobResult:
        started = time.monotonic()
        if batch_job_id is not None:
            job = self._batches.get_job(batch_job_id)
            if job is None or job["status"] not in OPEN_JOB_STATUSES:
                # Cancelled or already counted
                logger.info("Batch job %s is no longer open; nothing to do", batch_job_id)
                return V3JobResult(paper_id=paper_id, status="skipped")
            self._batches.mark_job_running(batch_job_id)

        existing = self._analyses.get_analysis(paper_id, ANALYSIS_VERSION)
        if existing and not force:
            Logger.info(f"Analysis already exists for paper {paper_id} ({ANALYSIS_VERSION}), skipping", file=LogFiles.ANALYSIS)
            result = V3JobResult(paper_id=paper_id, status="skipped", analysis_id=existing["id"])
            return self._roll_up(result, batch_job_id, started)

        if title is None or abstract is None:
            paper = self._papers.get_paper(paper_id)
            if paper is None:
                raise PaperNotFoundError(f"paper {paper_id} not found")
            title, abstract = paper["title"], paper["abstract"]
            authors = authors or [a.get("name", "") for a in paper.get("authors") or []]
            published = published or (paper.get("published_at") or "")[:10] or None
            categories = categories or paper.get("categories")

        analyzer = PaperAnalyzerV3(self._llm, model=model)
        run = await analyzer.analyze(
            title=title, abstract=abstract, authors=authors, published=published, categories=categories
        )
        analysis = run.outcome.analysis

        if existing and force:
            logger.info("Deleting existing v3 analysis for paper %s (force re-run)", paper_id)
            self._analyses.delete_analysis(paper_id, ANALYSIS_VERSION)
        analysis_id = self._analyses.save_analysis(paper_id, run)

        result = V3JobResult(
            paper_id=paper_id,
            status=run.status if analysis_id is not None else "skipped",
            analysis_id=analysis_id,
            what_kind=analysis.what_kind,
            practical_value_total=analysis.practical_value.total,
            tokens_used=run.tokens_used,
            cost_cents=cost_cents_for_tokens(run.tokens_used),
            model=run.model,
        )
        Logger.info(
            f"Paper {paper_id}: kind={analysis.what_kind} value={analysis.practical_value.total}/6 "
            f"readiness={analysis.readiness_level} tokens={run.tokens_used} status={run.status}",
            file=LogFiles.ANALYSIS,
        )
        return self._roll_up(result, batch_job_id, started)

    def _roll_up(self, result: V3JobResult, batch_job_id: Optional[int], started: float) -> V3JobResult:
        if batch_job_id is None:
            return result
        result.batch_completed = self._batches.record_job_completed(
            batch_job_id,
            tokens_used=result.tokens_used,
            cost_cents=result.cost_cents,
            processing_time_ms=int((time.monotonic() - started) * 1000),
        )
        if result.batch_completed:
            Logger.info(f"Batch completed by job {batch_job_id}", file=LogFiles.BATCH)
        return result

    def record_failure(self, batch_job_id: int, error: str) -> bool:
        """Count a permanently failed job against its batch."""
        closed = self._batches.record_job_failed(batch_job_id, error=error)
        Logger.warning(f"Batch job {batch_job_id} failed: {error}", file=LogFiles.BATCH)
        return closed

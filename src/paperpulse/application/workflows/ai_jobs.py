from __future__ import annotations

import math
from typing import Any, Dict, Optional

from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.workflows.ingestion import summary_job_id
from paperpulse.domain.errors import AIDisabledError
from paperpulse.infrastructure.queue.job_queue import (
    CARD_ANALYSIS_JOB,
    PAPER_ANALYSIS,
    SUMMARY_GENERATION,
    SUMMARY_JOB,
    JobQueue,
)
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

MAX_CARD_ANALYSES = 200
MAX_SUMMARIES = 500
DEFAULT_ANALYSIS_DELAY_MS = 15_000
DEFAULT_SUMMARY_DELAY_MS = 1_000


async def _require_ai(config: RuntimeConfigService) -> None:
    if not await config.get_ai_enabled(skip_cache=True):
        raise AIDisabledError("AI processing is disabled. Enable it from the admin panel or set AI_ENABLED=true")


async def queue_card_analyses(
    paper_store: PaperStore,
    job_queue: JobQueue,
    config: RuntimeConfigService,
    *,
    limit: int = 50,
    delay_ms: int = DEFAULT_ANALYSIS_DELAY_MS,
    model: Optional[str] = None,
    force: bool = False,
) -> Dict[str, Any]:
    """Queue DTL-P analysis for papers that have none, newest fetched first."""
    await _require_ai(config)
    papers = paper_store.list_without_card_analysis(limit=min(max(1, limit), MAX_CARD_ANALYSES))
    queued = 0
    for i, paper in enumerate(papers):
        payload: Dict[str, Any] = {"paper_id": paper["id"], "force": force}
        if model:
            payload["model"] = model
        if await job_queue.enqueue(
            PAPER_ANALYSIS,
            CARD_ANALYSIS_JOB,
            payload,
            job_id=f"card-{paper['id']}" if not force else None,
            delay_seconds=i * delay_ms / 1000,
        ):
            queued += 1
    Logger.info(f"Queued {queued} papers for DTL-P analysis", file=LogFiles.QUEUE)
    return {
        "message": f"Queued {queued} papers for DTL-P analysis",
        "queued": queued,
        "delay_ms": delay_ms,
        "estimated_minutes": math.ceil(queued * delay_ms / 60_000),
        "model": model,
        "force": force,
    }


async def queue_summaries(
    paper_store: PaperStore,
    job_queue: JobQueue,
    config: RuntimeConfigService,
    *,
    limit: int = 100,
    delay_ms: int = DEFAULT_SUMMARY_DELAY_MS,
) -> Dict[str, Any]:
    await _require_ai(config)
    papers = paper_store.list_without_summary(limit=min(max(1, limit), MAX_SUMMARIES))
    queued = 0
    for i, paper in enumerate(papers):
        if await job_queue.enqueue(
            SUMMARY_GENERATION,
            SUMMARY_JOB,
            {
                "paper_id": paper["id"],
                "arxiv_id": paper["external_id"],
                "title": paper["title"],
                "abstract": paper["abstract"],
            },
            job_id=summary_job_id(paper["id"]),
            delay_seconds=i * delay_ms / 1000,
        ):
            queued += 1
    Logger.info(f"Queued {queued} papers for summary generation", file=LogFiles.QUEUE)
    return {"message": f"Queued {queued} papers for summary generation", "queued": queued}

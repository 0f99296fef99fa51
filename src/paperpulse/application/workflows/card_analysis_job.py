"""
DTL-P analysis job: one paper through analyze, persist and map.
"""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from paperpulse.application.services.paper_card_analysis import PaperCardAnalyzer
from paperpulse.domain.card_analysis import ANALYSIS_VERSION, CardAnalysisResult
from paperpulse.domain.errors import PaperNotFoundError
from paperpulse.infrastructure.stores.analysis_store import CardAnalysisStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from paperpulse.utils.logging_config import LogFiles, Logger

logger = logging.getLogger(__name__)

_STATUS_SUFFIX = re.compile(r"\s*\((active|provisional|deprecated)\)\s*$", re.IGNORECASE)


def clean_use_case_name(name: str) -> str:
    """'Enterprise search (active)' -> 'Enterprise search'."""
    return _STATUS_SUFFIX.sub("", name or "").strip()


@dataclass
class CardJobResult:
    paper_id: int
    status: str
    analysis_id: Optional[int] = None
    tokens_used: int = 0
    mappings_added: int = 0
    dropped_use_cases: List[str] = field(default_factory=list)
    proposals_added: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class CardAnalysisJob:
    """
    Bulk DTL-P runs are not batch-tracked: jobs are queued per paper by
    ``queue_card_analyses`` and a permanent failure lands in the queue's
    failed list. Batches belong to the v3 pipeline.
    """

    def __init__(
        self,
        analyzer: PaperCardAnalyzer,
        *,
        paper_store: PaperStore,
        analysis_store: CardAnalysisStore,
    ):
        self._analyzer = analyzer
        self._papers = paper_store
        self._analyses = analysis_store

    async def run(self, paper_id: int, *, force: bool = False) -> CardJobResult:
        existing = self._analyses.get_analysis(paper_id, ANALYSIS_VERSION)
        if existing and not force:
            Logger.info(f"Skipping paper {paper_id}: {ANALYSIS_VERSION} analysis exists", file=LogFiles.ANALYSIS)
            return CardJobResult(paper_id=paper_id, status="skipped", analysis_id=existing["id"])

        paper = self._papers.get_paper(paper_id)
        if paper is None:
            raise PaperNotFoundError(f"paper {paper_id} not found")

        published = paper.get("published_at") or ""
        analysis = await self._analyzer.analyze(
            title=paper["title"],
            abstract=paper["abstract"],
            taxonomy=self._analyses.list_taxonomy(),
            authors=[a.get("name", "") for a in paper.get("authors") or []],
            year=int(published[:4]) if published[:4].isdigit() else None,
        )

        if existing and force:
            self._analyses.delete_analysis(paper_id, ANALYSIS_VERSION)
        analysis_id = self._analyses.save_analysis(paper_id, analysis)
        if analysis_id is None:
            # Lost a race with another worker for the same paper
            logger.info("Analysis for paper %s was stored concurrently; treating as skipped", paper_id)
            return CardJobResult(paper_id=paper_id, status="skipped", tokens_used=analysis.tokens_used)

        result = CardJobResult(
            paper_id=paper_id,
            status=analysis.status,
            analysis_id=analysis_id,
            tokens_used=analysis.tokens_used,
            warnings=list(analysis.validation_warnings),
        )
        self._map_use_cases(analysis, result)
        self._insert_proposals(analysis, result)

        Logger.info(
            f"Paper {paper_id} analysed: status={result.status} mappings={result.mappings_added} "
            f"proposals={result.proposals_added} warnings={len(result.warnings)}",
            file=LogFiles.ANALYSIS,
        )
        return result

    def _map_use_cases(self, analysis: CardAnalysisResult, result: CardJobResult) -> None:
        for mapping in analysis.analysis.use_case_mapping:
            name = clean_use_case_name(mapping.use_case_name)
            entry = self._analyses.find_taxonomy_by_name(name)
            if entry is None:
                logger.warning("Unknown use case %r for paper %s; dropped", mapping.use_case_name, result.paper_id)
                result.dropped_use_cases.append(mapping.use_case_name)
                continue
            self._analyses.add_use_case_mapping(
                analysis_id=result.analysis_id,
                taxonomy_entry_id=entry["id"],
                fit_confidence=mapping.fit_confidence,
                because=mapping.because,
                evidence_pointers=mapping.evidence_pointers,
            )
            result.mappings_added += 1

    def _insert_proposals(self, analysis: CardAnalysisResult, result: CardJobResult) -> None:
        for proposal in analysis.analysis.taxonomy_proposals[:1]:
            if self._analyses.insert_proposal(proposal) is None:
                logger.info("Taxonomy proposal %r already exists; ignored", proposal.proposed_name)
                continue
            result.proposals_added += 1

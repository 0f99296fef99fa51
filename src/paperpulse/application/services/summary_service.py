from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from paperpulse.application.ports.llm_port import ChatCompletionPort
from paperpulse.application.prompts.summary import SUMMARY_SYSTEM, SUMMARY_USER
from paperpulse.domain.errors import PaperNotFoundError
from paperpulse.infrastructure.stores.paper_store import PaperStore

logger = logging.getLogger(__name__)

BULLET_FALLBACK = "Summary not available"
ELI5_FALLBACK = "Simple explanation not available."
BULLET_COUNT = 3


class SummaryResponse(BaseModel):
    bullets: List[str] = Field(min_length=BULLET_COUNT, max_length=BULLET_COUNT)
    eli5: str


@dataclass
class PaperSummary:
    bullets: List[str]
    eli5: str
    tokens_used: int
    model: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bullets": list(self.bullets),
            "eli5": self.eli5,
            "tokens_used": self.tokens_used,
            "model": self.model,
        }


def salvage_summary(raw: Any) -> SummaryResponse:
    """Keep whatever is usable from a reply that failed validation."""
    data = raw if isinstance(raw, dict) else {}
    bullets = data.get("bullets")
    if isinstance(bullets, list):
        bullets = [str(b) for b in bullets[:BULLET_COUNT]]
    else:
        bullets = []
    bullets += [BULLET_FALLBACK] * (BULLET_COUNT - len(bullets))
    eli5 = data.get("eli5")
    return SummaryResponse(bullets=bullets, eli5=eli5 if isinstance(eli5, str) else ELI5_FALLBACK)


class SummaryService:
    """Three-bullet summary plus ELI5 for a paper; the result is written onto the paper row."""

    def __init__(self, llm: ChatCompletionPort, paper_store: PaperStore, *, model: Optional[str] = None):
        self._llm = llm
        self._papers = paper_store
        self._model = model

    async def summarize(self, title: str, abstract: str) -> PaperSummary:
        completion = await self._llm.complete(
            system=SUMMARY_SYSTEM,
            user=SUMMARY_USER.format(title=title, abstract=abstract),
            model=self._model,
            temperature=0.3,
            max_tokens=1000,
        )
        raw = completion.json()
        try:
            parsed = SummaryResponse.model_validate(raw)
        except ValidationError as e:
            logger.warning("Summary reply failed validation, salvaging: %s", e.error_count())
            parsed = salvage_summary(raw)
        return PaperSummary(
            bullets=parsed.bullets,
            eli5=parsed.eli5,
            tokens_used=completion.tokens_used,
            model=completion.model,
        )

    async def summarize_paper(self, paper_id: int, *, title: Optional[str] = None, abstract: Optional[str] = None) -> PaperSummary:
        if title is None or abstract is None:
            paper = self._papers.get_paper(paper_id)
            if paper is None:
                raise PaperNotFoundError(f"paper {paper_id} not found")
            title, abstract = paper["title"], paper["abstract"]

        summary = await self.summarize(title, abstract)
        if not self._papers.update_summary(paper_id, bullets=summary.bullets, eli5=summary.eli5, model=summary.model):
            raise PaperNotFoundError(f"paper {paper_id} not found")
        logger.info("Stored summary for paper %s (%d tokens)", paper_id, summary.tokens_used)
        return summary

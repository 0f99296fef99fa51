from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from paperpulse.application.ports.llm_port import ChatCompletionPort
from paperpulse.application.prompts.paper_card import (
    PAPER_CARD_SYSTEM,
    RETRY_FEEDBACK,
    build_user_prompt,
)
from paperpulse.application.services.card_coercion import coerce_card, strict_required_issues
from paperpulse.domain.card_analysis import (
    CardAnalysisResult,
    PaperCardAnalysis,
    check_evidence_pointer,
    derive_status,
    split_sentences,
)
from paperpulse.domain.errors import AnalysisValidationError, LLMResponseError
from paperpulse.domain.llm import ChatCompletion

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "z-ai/glm-4.7"
MAX_TOKENS = 8000


def prompt_hash(system: str, user: str) -> str:
    return hashlib.sha256((system + user).encode("utf-8")).hexdigest()


def format_validation_error(error: ValidationError) -> List[str]:
    issues = []
    for item in error.errors():
        path = ".".join(str(part) for part in item.get("loc", ()))
        issues.append(f"{path or '(root)'}: {item.get('msg', 'invalid')}")
    return issues


@dataclass
class _Attempt:
    analysis: Optional[PaperCardAnalysis] = None
    strict_issues: List[str] = field(default_factory=list)
    schema_issues: List[str] = field(default_factory=list)
    normalized: List[str] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return self.analysis is not None and not self.strict_issues

    @property
    def issues(self) -> List[str]:
        return self.strict_issues + self.schema_issues


def evaluate_response(raw: Any) -> _Attempt:
    """Run the three validation tiers over one parsed LLM reply."""
    attempt = _Attempt(strict_issues=strict_required_issues(raw))
    if not isinstance(raw, dict):
        return attempt
    coerced = coerce_card(raw)
    attempt.normalized = coerced.normalized
    attempt.repaired = coerced.repaired
    try:
        attempt.analysis = PaperCardAnalysis.model_validate(coerced.data)
    except ValidationError as e:
        attempt.schema_issues = format_validation_error(e)
    return attempt


def evidence_warnings(analysis: PaperCardAnalysis, sentence_count: int) -> List[str]:
    warnings = []
    for location, pointer in analysis.evidence_pointers():
        problem = check_evidence_pointer(pointer, sentence_count)
        if problem:
            warnings.append(f"{location}: {problem}")
    return warnings


class PaperCardAnalyzer:
    """
    Produces a DTL-P analysis for one paper.

    The reply goes through the required-field check, field coercion and
    schema validation. When any tier reports issues the prompt is sent once
    more with the issues appended; if neither reply validates the analysis
    fails with AnalysisValidationError.
    """

    def __init__(self, llm: ChatCompletionPort, *, model: Optional[str] = None, max_tokens: int = MAX_TOKENS):
        self._llm = llm
        self.model = model or DEFAULT_MODEL
        self._max_tokens = max_tokens

    async def _call(self, user: str) -> Tuple[Any, ChatCompletion]:
        completion = await self._llm.complete(
            system=PAPER_CARD_SYSTEM,
            user=user,
            model=self.model,
            temperature=0.0,
            max_tokens=self._max_tokens,
        )
        try:
            raw = completion.json()
        except LLMResponseError as e:
            logger.warning("DTL-P reply was not JSON: %s", e)
            raw = None
        return raw, completion

    async def analyze(
        self,
        *,
        title: str,
        abstract: str,
        taxonomy: List[Dict[str, Any]],
        authors: Optional[List[str]] = None,
        year: Optional[int] = None,
    ) -> CardAnalysisResult:
        sentences = split_sentences(abstract)
        user = build_user_prompt(title=title, sentences=sentences, taxonomy=taxonomy, authors=authors, year=year)
        p_hash = prompt_hash(PAPER_CARD_SYSTEM, user)

        raw, completion = await self._call(user)
        tokens = completion.tokens_used
        model = completion.model
        first = evaluate_response(raw) if raw is not None else _Attempt(strict_issues=["(root): response is not valid JSON"])
        chosen = first

        if not first.clean:
            logger.info("DTL-P validation issues, retrying with feedback: %s", first.issues)
            feedback = RETRY_FEEDBACK.format(issues="\n".join(f"- {i}" for i in first.issues))
            raw, completion = await self._call(user + feedback)
            tokens += completion.tokens_used
            second = (
                evaluate_response(raw) if raw is not None else _Attempt(strict_issues=["(root): response is not valid JSON"])
            )
            if second.analysis is not None:
                chosen = second
                model = completion.model
            elif first.analysis is None:
                issues = [f"attempt1: {i}" for i in first.issues] + [f"attempt2: {i}" for i in second.issues]
                raise AnalysisValidationError("DTL-P analysis failed validation after retry", issues)

        analysis = chosen.analysis
        if chosen.normalized:
            logger.info("DTL-P normalized fields: %s", chosen.normalized)
        if chosen.repaired:
            logger.warning("DTL-P repaired fields: %s", chosen.repaired)

        warnings = evidence_warnings(analysis, len(sentences))
        status = derive_status(analysis, strict_issues=chosen.strict_issues, repairs=chosen.repaired)
        return CardAnalysisResult(
            analysis=analysis,
            status=status,
            prompt_hash=p_hash,
            model=model,
            tokens_used=tokens,
            validation_errors=chosen.strict_issues + chosen.repaired,
            validation_warnings=warnings,
            coercions=chosen.normalized + chosen.repaired,
        )

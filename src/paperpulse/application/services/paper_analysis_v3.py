from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from pydantic import ValidationError

from paperpulse.application.ports.llm_port import ChatCompletionPort
from paperpulse.application.prompts.analysis_v3 import (
    ANALYSIS_V3_SYSTEM,
    RETRY_FEEDBACK,
    build_user_prompt,
)
from paperpulse.application.services.paper_card_analysis import prompt_hash
from paperpulse.domain.analysis_v3 import (
    IMPACT_TAGS,
    KINDS,
    READINESS,
    TIME_TO_VALUE,
    Complete,
    Partial,
    PracticalValue,
    V3Analysis,
    V3AnalysisRun,
    V3AnalysisSchema,
    ValidationIssue,
)
from paperpulse.domain.errors import LLMResponseError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "moonshotai/kimi-k2.5"
MAX_TOKENS = 4000

FALLBACK_HOOK = "Analysis incomplete, see abstract for details."
FALLBACK_CONTEXT = "Prior work context unavailable."


def validate_v3(raw: Any, attempt: int) -> Tuple[Optional[V3Analysis], List[ValidationIssue]]:
    """Strict pass; a reported practical-value total is replaced by the computed sum."""
    try:
        schema = V3AnalysisSchema.model_validate(raw)
    except ValidationError as e:
        issues = [
            ValidationIssue(
                attempt=attempt,
                path=".".join(str(part) for part in item.get("loc", ())),
                message=item.get("msg", "invalid"),
            )
            for item in e.errors()
        ]
        return None, issues
    return schema.to_analysis(), []


def build_partial_analysis(raw: Any) -> V3Analysis:
    """Best-effort analysis from an unvalidated reply; unusable fields get fixed fallbacks."""
    data = raw if isinstance(raw, dict) else {}

    def safe_string(value: Any, fallback: str) -> str:
        return value if isinstance(value, str) and value else fallback

    def safe_list(value: Any) -> list:
        return value if isinstance(value, list) else []

    return V3Analysis(
        hook_sentence=safe_string(data.get("hook_sentence"), FALLBACK_HOOK),
        what_kind=data.get("what_kind") if data.get("what_kind") in KINDS else "New Method",
        time_to_value=data.get("time_to_value") if data.get("time_to_value") in TIME_TO_VALUE else "Unknown",
        impact_area_tags=tuple(t for t in safe_list(data.get("impact_area_tags")) if t in IMPACT_TAGS)[:3],
        practical_value=PracticalValue(),
        key_numbers=(),
        readiness_level=(
            data.get("readiness_level") if data.get("readiness_level") in READINESS else "Research Only"
        ),
        how_this_changes_things=tuple(
            s for s in safe_list(data.get("how_this_changes_things")) if isinstance(s, str) and len(s) >= 20
        )[:3],
        what_came_before=safe_string(data.get("what_came_before"), FALLBACK_CONTEXT),
    )


class PaperAnalyzerV3:
    """
    V3 analysis of one abstract.

    Never raises on bad model output: two failed validations produce a
    Partial outcome carrying the issues from both attempts.
    """

    def __init__(self, llm: ChatCompletionPort, *, model: Optional[str] = None, max_tokens: int = MAX_TOKENS):
        self._llm = llm
        self.model = model or self.resolve_model(llm)
        self._max_tokens = max_tokens

    @staticmethod
    def resolve_model(llm: Optional[ChatCompletionPort]) -> str:
        return getattr(llm, "model", None) or DEFAULT_MODEL

    async def _attempt(self, user: str, attempt: int):
        completion = await self._llm.complete(
            system=ANALYSIS_V3_SYSTEM,
            user=user,
            model=self.model,
            temperature=0.0,
            max_tokens=self._max_tokens,
        )
        try:
            raw = completion.json()
        except LLMResponseError as e:
            return completion, None, None, [ValidationIssue(attempt=attempt, path="", message=str(e))]
        analysis, issues = validate_v3(raw, attempt)
        return completion, raw, analysis, issues

    async def analyze(
        self,
        *,
        title: str,
        abstract: str,
        authors: Optional[List[str]] = None,
        published: Optional[str] = None,
        categories: Optional[List[str]] = None,
    ) -> V3AnalysisRun:
        user = build_user_prompt(
            title=title, abstract=abstract, authors=authors, published=published, categories=categories
        )
        p_hash = prompt_hash(ANALYSIS_V3_SYSTEM, user)

        completion, first_raw, analysis, issues = await self._attempt(user, 1)
        if analysis is not None:
            return V3AnalysisRun(
                outcome=Complete(analysis),
                prompt_hash=p_hash,
                model=completion.model,
                tokens_used=completion.tokens_used,
            )

        logger.warning("V3 first attempt failed validation, retrying with feedback")
        feedback = RETRY_FEEDBACK.format(issues="; ".join(f"{i.path}: {i.message}" for i in issues))
        retry, retry_raw, retry_analysis, retry_issues = await self._attempt(user + feedback, 2)
        tokens = completion.tokens_used + retry.tokens_used
        if retry_analysis is not None:
            return V3AnalysisRun(
                outcome=Complete(retry_analysis),
                prompt_hash=p_hash,
                model=retry.model,
                tokens_used=tokens,
                attempts=2,
            )

        logger.error("V3 retry also failed validation, storing partial result")
        # An unparseable retry falls back to whatever the first reply carried
        salvage_from = retry_raw if retry_raw is not None else first_raw
        return V3AnalysisRun(
            outcome=Partial(build_partial_analysis(salvage_from), tuple(issues + retry_issues)),
            prompt_hash=p_hash,
            model=retry.model,
            tokens_used=tokens,
            attempts=2,
        )

"""
PaperCardAnalysis (DTL-P) domain model.

The strict shape an analysis must have before it is persisted. Loose LLM
output is coerced into this shape by
paperpulse.application.services.card_coercion.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

ANALYSIS_VERSION = "dtlp_v1"
NOT_AVAILABLE = "Not available"
LOW_CONFIDENCE_THRESHOLD = 0.4

ROLES = ("Primitive", "Platform", "Proof", "Provocation")
TIME_TO_VALUE = ("Now", "Soon", "Later", "Unknown")
CHECK_IDS = (
    "business_primitive_impact",
    "delta_specificity",
    "comparison_credibility",
    "real_world_plausibility",
    "evidence_strength",
    "failure_disclosure",
)
INTEREST_TIERS = ("low", "moderate", "high", "very_high")
BUSINESS_PRIMITIVES = ("cost", "reliability", "speed", "quality", "risk", "new_capability")
READINESS_LEVELS = ("research_only", "prototype_candidate", "deployable_with_work")
FIT_CONFIDENCE = ("low", "med", "high")

Role = Literal["Primitive", "Platform", "Proof", "Provocation"]
TimeToValue = Literal["Now", "Soon", "Later", "Unknown"]
CheckId = Literal[
    "business_primitive_impact",
    "delta_specificity",
    "comparison_credibility",
    "real_world_plausibility",
    "evidence_strength",
    "failure_disclosure",
]
Tier = Literal["low", "moderate", "high", "very_high"]
BusinessPrimitive = Literal["cost", "reliability", "speed", "quality", "risk", "new_capability"]
Readiness = Literal["research_only", "prototype_candidate", "deployable_with_work"]
Fit = Literal["low", "med", "high"]

_POINTER = re.compile(r"^S(\d+)$")
_SENTENCE_BREAK = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"'(\[])")


def tier_for_score(total: int) -> str:
    if total <= 3:
        return "low"
    if total <= 6:
        return "moderate"
    if total <= 9:
        return "high"
    return "very_high"


def split_sentences(abstract: str) -> List[str]:
    """Split an abstract into sentences numbered S1..Sn in prompts."""
    text = " ".join((abstract or "").split())
    if not text:
        return []
    return [s.strip() for s in _SENTENCE_BREAK.split(text) if s.strip()]


def check_evidence_pointer(pointer: str, sentence_count: int) -> Optional[str]:
    """Return a warning for a bad pointer, or None if it is valid."""
    value = (pointer or "").strip()
    if value == NOT_AVAILABLE:
        return None
    match = _POINTER.match(value)
    if not match:
        return f"malformed evidence pointer {value!r}"
    n = int(match.group(1))
    if n < 1 or n > sentence_count:
        return f"evidence pointer {value} out of range (abstract has {sentence_count} sentences)"
    return None


class _Strict(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class InterestingnessCheck(_Strict):
    check_id: CheckId
    score: int = Field(ge=0, le=2)
    answer: str
    evidence_pointers: List[str]
    notes: Optional[str] = None


class Interestingness(_Strict):
    total_score: int = Field(ge=0, le=12)
    tier: Tier
    checks: List[InterestingnessCheck] = Field(min_length=1, max_length=6)


class BusinessPrimitives(_Strict):
    selected: List[BusinessPrimitive] = Field(max_length=2)
    justification: str
    evidence_pointers: List[str]


class KeyNumber(_Strict):
    metric_name: str
    value: str
    direction: Literal["up", "down"]
    baseline: Optional[str] = None
    conditions: str
    evidence_pointer: str


class ConstraintItem(_Strict):
    constraint: str
    why_it_matters: str
    evidence_pointer: str


class FailureMode(_Strict):
    failure_mode: str
    why_it_matters: str
    evidence_pointer: str


class UseCaseMapping(_Strict):
    use_case_id: str
    use_case_name: str
    fit_confidence: Fit
    because: str
    evidence_pointers: List[str]


class TaxonomyProposal(_Strict):
    type: Literal["use_case"] = "use_case"
    proposed_name: str = Field(min_length=1)
    definition: str
    inclusions: List[str]
    exclusions: List[str]
    synonyms: List[str]
    examples: List[str]
    rationale: str


class PublicViews(_Strict):
    hook_sentence: str
    thirty_second_summary: List[str] = Field(alias="30s_summary", min_length=1, max_length=5)
    three_minute_summary: str = Field(alias="3m_summary")
    operator_addendum: Optional[str] = Field(default=None, alias="8m_operator_addendum")


class PaperCardAnalysis(_Strict):
    role: Role
    role_confidence: float = Field(ge=0, le=1)
    time_to_value: TimeToValue
    time_to_value_confidence: float = Field(ge=0, le=1)
    interestingness: Interestingness
    business_primitives: BusinessPrimitives
    key_numbers: List[KeyNumber] = Field(max_length=3)
    constraints: List[ConstraintItem] = Field(max_length=3)
    failure_modes: List[FailureMode] = Field(max_length=3)
    what_is_missing: List[str]
    readiness_level: Readiness
    readiness_justification: str
    readiness_evidence_pointers: List[str]
    use_case_mapping: List[UseCaseMapping] = Field(max_length=5)
    taxonomy_proposals: List[TaxonomyProposal] = Field(max_length=1)
    public_views: PublicViews

    def evidence_pointers(self) -> List[Tuple[str, str]]:
        """All (location, pointer) pairs the analysis cites."""
        pairs: List[Tuple[str, str]] = []
        for i, check in enumerate(self.interestingness.checks):
            pairs += [(f"interestingness.checks[{i}]", p) for p in check.evidence_pointers]
        pairs += [("business_primitives", p) for p in self.business_primitives.evidence_pointers]
        pairs += [(f"key_numbers[{i}]", kn.evidence_pointer) for i, kn in enumerate(self.key_numbers)]
        pairs += [(f"constraints[{i}]", c.evidence_pointer) for i, c in enumerate(self.constraints)]
        pairs += [(f"failure_modes[{i}]", f.evidence_pointer) for i, f in enumerate(self.failure_modes)]
        pairs += [("readiness_evidence_pointers", p) for p in self.readiness_evidence_pointers]
        for i, mapping in enumerate(self.use_case_mapping):
            pairs += [(f"use_case_mapping[{i}]", p) for p in mapping.evidence_pointers]
        return pairs


AnalysisStatus = Literal["complete", "partial", "low_confidence"]


@dataclass
class CardAnalysisResult:
    """Validated analysis plus the bookkeeping persisted alongside it."""

    analysis: PaperCardAnalysis
    status: str
    prompt_hash: str
    model: str
    tokens_used: int = 0
    validation_errors: List[str] = field(default_factory=list)
    validation_warnings: List[str] = field(default_factory=list)
    coercions: List[str] = field(default_factory=list)


def derive_status(analysis: PaperCardAnalysis, *, strict_issues: List[str], repairs: List[str]) -> str:
    """
    low_confidence when either confidence is under the threshold, partial when
    the strict pass found gaps or values had to be repaired. Partial is
    evaluated last and wins.
    """
    status = "complete"
    if (
        analysis.role_confidence < LOW_CONFIDENCE_THRESHOLD
        or analysis.time_to_value_confidence < LOW_CONFIDENCE_THRESHOLD
    ):
        status = "low_confidence"
    if strict_issues or repairs:
        status = "partial"
    return status

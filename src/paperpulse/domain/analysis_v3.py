"""
V3 paper analysis: the simplified 10-field card.

A run produces either a Complete analysis or a Partial one carrying the
validation issues that forced the degraded record.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field

ANALYSIS_VERSION = "v3"

KINDS = (
    "New Method",
    "New Model",
    "Infrastructure / Tooling",
    "Benchmark / Evaluation",
    "Dataset",
    "Application Study",
    "Survey / Review",
    "Scaling Study",
    "Safety / Alignment",
)
TIME_TO_VALUE = ("Now", "Soon", "Later", "Unknown")
IMPACT_TAGS = (
    "Reasoning & Planning",
    "Tool Use & Agents",
    "Cost & Efficiency",
    "Context & Memory",
    "Human-AI Interaction",
    "Code & Engineering",
    "Multimodal",
    "Safety & Trust",
    "Training & Data",
    "Domain-Specific AI",
)
READINESS = ("Research Only", "Needs Engineering", "Ready to Try")

Kind = Literal[
    "New Method",
    "New Model",
    "Infrastructure / Tooling",
    "Benchmark / Evaluation",
    "Dataset",
    "Application Study",
    "Survey / Review",
    "Scaling Study",
    "Safety / Alignment",
]
ImpactTag = Literal[
    "Reasoning & Planning",
    "Tool Use & Agents",
    "Cost & Efficiency",
    "Context & Memory",
    "Human-AI Interaction",
    "Code & Engineering",
    "Multimodal",
    "Safety & Trust",
    "Training & Data",
    "Domain-Specific AI",
]


@dataclass(frozen=True)
class PracticalValue:
    real_problem: int = 0
    concrete_result: int = 0
    actually_usable: int = 0

    @property
    def total(self) -> int:
        return self.real_problem + self.concrete_result + self.actually_usable

    def to_dict(self) -> Dict[str, int]:
        return {
            "real_problem": self.real_problem,
            "concrete_result": self.concrete_result,
            "actually_usable": self.actually_usable,
            "total": self.total,
        }


@dataclass(frozen=True)
class V3KeyNumber:
    metric: str
    value: str
    direction: str
    baseline: Optional[str]
    conditions: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "metric": self.metric,
            "value": self.value,
            "direction": self.direction,
            "baseline": self.baseline,
            "conditions": self.conditions,
        }


@dataclass(frozen=True)
class V3Analysis:
    hook_sentence: str
    what_kind: str
    time_to_value: str
    impact_area_tags: Tuple[str, ...]
    practical_value: PracticalValue
    key_numbers: Tuple[V3KeyNumber, ...]
    readiness_level: str
    how_this_changes_things: Tuple[str, ...]
    what_came_before: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hook_sentence": self.hook_sentence,
            "what_kind": self.what_kind,
            "time_to_value": self.time_to_value,
            "impact_area_tags": list(self.impact_area_tags),
            "practical_value_score": self.practical_value.to_dict(),
            "key_numbers": [kn.to_dict() for kn in self.key_numbers],
            "readiness_level": self.readiness_level,
            "how_this_changes_things": list(self.how_this_changes_things),
            "what_came_before": self.what_came_before,
        }


class _Strict(BaseModel):
    model_config = ConfigDict(extra="ignore")


class V3KeyNumberSchema(_Strict):
    metric: str
    value: str
    direction: Literal["up", "down"]
    baseline: Optional[str]
    conditions: str


class PracticalValueSchema(_Strict):
    # A reported total is accepted but never trusted; see PracticalValue.total
    real_problem: int = Field(ge=0, le=2)
    concrete_result: int = Field(ge=0, le=2)
    actually_usable: int = Field(ge=0, le=2)


class V3AnalysisSchema(_Strict):
    hook_sentence: str = Field(min_length=10, max_length=150)
    what_kind: Kind
    time_to_value: Literal["Now", "Soon", "Later", "Unknown"]
    impact_area_tags: List[ImpactTag] = Field(min_length=1, max_length=3)
    practical_value_score: PracticalValueSchema
    key_numbers: List[V3KeyNumberSchema] = Field(max_length=3)
    readiness_level: Literal["Research Only", "Needs Engineering", "Ready to Try"]
    how_this_changes_things: List[Annotated[str, Field(min_length=20)]] = Field(min_length=2, max_length=3)
    what_came_before: str = Field(min_length=10)

    def to_analysis(self) -> V3Analysis:
        score = self.practical_value_score
        return V3Analysis(
            hook_sentence=self.hook_sentence,
            what_kind=self.what_kind,
            time_to_value=self.time_to_value,
            impact_area_tags=tuple(self.impact_area_tags),
            practical_value=PracticalValue(
                real_problem=score.real_problem,
                concrete_result=score.concrete_result,
                actually_usable=score.actually_usable,
            ),
            key_numbers=tuple(
                V3KeyNumber(
                    metric=kn.metric,
                    value=kn.value,
                    direction=kn.direction,
                    baseline=kn.baseline,
                    conditions=kn.conditions,
                )
                for kn in self.key_numbers
            ),
            readiness_level=self.readiness_level,
            how_this_changes_things=tuple(self.how_this_changes_things),
            what_came_before=self.what_came_before,
        )


@dataclass(frozen=True)
class ValidationIssue:
    attempt: int
    path: str
    message: str

    def __str__(self) -> str:
        location = self.path or "(root)"
        return f"attempt{self.attempt}: {location}: {self.message}"


@dataclass(frozen=True)
class Complete:
    analysis: V3Analysis

    status = "complete"


@dataclass(frozen=True)
class Partial:
    analysis: V3Analysis
    issues: Tuple[ValidationIssue, ...]

    status = "partial"


V3Outcome = Union[Complete, Partial]


@dataclass
class V3AnalysisRun:
    outcome: V3Outcome
    prompt_hash: str
    model: str
    tokens_used: int = 0
    attempts: int = 1

    @property
    def status(self) -> str:
        return self.outcome.status

    @property
    def validation_errors(self) -> List[str]:
        if isinstance(self.outcome, Partial):
            return [str(issue) for issue in self.outcome.issues]
        return []


def cost_cents_for_tokens(tokens: int) -> int:
    """Flat estimate used for batch spend accounting: 0.001 cents per token, min 1."""
    return max(1, round(tokens * 0.001))

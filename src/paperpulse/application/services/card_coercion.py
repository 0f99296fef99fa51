"""
Loose phase of DTL-P parsing.

Raw LLM JSON is checked for required fields and coerced field by field into
the shape PaperCardAnalysis expects. Each change is recorded either as a
normalization (cosmetic: casing, synonyms, numeric types) or as a repair
(a value was missing, out of range, or replaced by a fallback). Repairs
make the stored record "partial"; normalizations are only logged.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from paperpulse.domain.card_analysis import (
    BUSINESS_PRIMITIVES,
    FIT_CONFIDENCE,
    NOT_AVAILABLE,
    READINESS_LEVELS,
    ROLES,
    TIME_TO_VALUE,
    tier_for_score,
)

REQUIRED_FIELDS = (
    "role",
    "role_confidence",
    "time_to_value",
    "time_to_value_confidence",
    "interestingness",
    "business_primitives",
    "readiness_level",
    "readiness_justification",
    "public_views",
)
REQUIRED_PUBLIC_VIEWS = ("hook_sentence", "30s_summary", "3m_summary")
LIST_FIELDS = (
    "key_numbers",
    "constraints",
    "failure_modes",
    "what_is_missing",
    "readiness_evidence_pointers",
    "use_case_mapping",
    "taxonomy_proposals",
)
MAX_ITEMS = {
    "key_numbers": 3,
    "constraints": 3,
    "failure_modes": 3,
    "use_case_mapping": 5,
    "taxonomy_proposals": 1,
}

_UP = {"up", "higher", "increase", "increased", "positive", "+", "better"}
_DOWN = {"down", "lower", "decrease", "decreased", "negative", "-", "reduced"}
_FIT = {"high": "high", "h": "high", "medium": "med", "med": "med", "m": "med", "low": "low", "l": "low"}
_POINTER = re.compile(r"^s(?:entence)?\s*(\d+)$", re.IGNORECASE)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, (str, list, dict)):
        return len(value) == 0 if not isinstance(value, str) else not value.strip()
    return False


def strict_required_issues(raw: Any) -> List[str]:
    """Tier 1: required top-level fields (and public view texts) present and non-empty."""
    if not isinstance(raw, dict):
        return ["(root): expected a JSON object"]
    issues = [f"{name}: missing or empty" for name in REQUIRED_FIELDS if _is_empty(raw.get(name))]
    views = raw.get("public_views")
    if isinstance(views, dict):
        issues += [
            f"public_views.{name}: missing or empty"
            for name in REQUIRED_PUBLIC_VIEWS
            if _is_empty(views.get(name))
        ]
    return issues


@dataclass
class CoercedCard:
    data: Dict[str, Any]
    normalized: List[str] = field(default_factory=list)
    repaired: List[str] = field(default_factory=list)


class _Coercer:
    def __init__(self) -> None:
        self.normalized: List[str] = []
        self.repaired: List[str] = []

    # -- primitives -------------------------------------------------------

    def text(self, value: Any, path: str) -> str:
        if value is None:
            return ""
        if isinstance(value, list):
            self.normalized.append(f"{path}: joined list into text")
            return ", ".join(str(v) for v in value)
        if not isinstance(value, str):
            self.normalized.append(f"{path}: converted {type(value).__name__} to text")
        return str(value)

    def optional_text(self, value: Any, path: str) -> Optional[str]:
        if value is None or value == "":
            return None
        return self.text(value, path)

    def text_list(self, value: Any, path: str) -> List[str]:
        if value is None:
            self.repaired.append(f"{path}: null replaced with []")
            return []
        if isinstance(value, str):
            self.normalized.append(f"{path}: wrapped single string in list")
            return [value]
        if not isinstance(value, list):
            self.repaired.append(f"{path}: {type(value).__name__} replaced with []")
            return []
        return [self.text(v, f"{path}[{i}]") for i, v in enumerate(value)]

    def object_list(self, value: Any, path: str) -> List[Dict[str, Any]]:
        if value is None:
            self.repaired.append(f"{path}: null replaced with []")
            return []
        if isinstance(value, dict):
            self.normalized.append(f"{path}: wrapped single object in list")
            value = [value]
        if not isinstance(value, list):
            self.repaired.append(f"{path}: {type(value).__name__} replaced with []")
            return []
        items = [v for v in value if isinstance(v, dict)]
        if len(items) != len(value):
            self.repaired.append(f"{path}: dropped {len(value) - len(items)} non-object item(s)")
        limit = MAX_ITEMS.get(path)
        if limit is not None and len(items) > limit:
            self.repaired.append(f"{path}: truncated {len(items)} items to {limit}")
            items = items[:limit]
        return items

    def confidence(self, value: Any, path: str) -> Any:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            if value is None:
                return value
            try:
                value = float(str(value).strip().rstrip("%"))
                self.normalized.append(f"{path}: parsed number from text")
            except ValueError:
                self.repaired.append(f"{path}: non-numeric {value!r} replaced with 0.5")
                return 0.5
        clamped = min(1.0, max(0.0, float(value)))
        if clamped != value:
            self.repaired.append(f"{path}: {value} clamped to {clamped}")
        return clamped

    def score(self, value: Any, path: str, *, upper: int = 2) -> int:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            self.repaired.append(f"{path}: non-numeric {value!r} replaced with 0")
            return 0
        rounded = int(round(value))
        clamped = min(upper, max(0, rounded))
        if clamped != rounded:
            self.repaired.append(f"{path}: {value} clamped to {clamped}")
        elif rounded != value or not isinstance(value, int):
            self.normalized.append(f"{path}: {value!r} rounded to {rounded}")
        return clamped

    def choice(self, value: Any, allowed: tuple, path: str) -> Any:
        """Case-insensitive enum match; unknown values are left for strict validation."""
        if not isinstance(value, str):
            return value
        if value in allowed:
            return value
        wanted = value.strip().lower().replace(" ", "_").replace("-", "_")
        for option in allowed:
            if option.lower() == wanted or option.lower().replace(" ", "_") == wanted:
                self.normalized.append(f"{path}: {value!r} normalized to {option!r}")
                return option
        return value

    def direction(self, value: Any, path: str) -> str:
        v = str(value).strip().lower() if value is not None else ""
        if v in ("up", "down"):
            if value != v:
                self.normalized.append(f"{path}: {value!r} normalized to {v!r}")
            return v
        if v in _UP:
            self.normalized.append(f"{path}: {value!r} normalized to 'up'")
            return "up"
        if v in _DOWN:
            self.normalized.append(f"{path}: {value!r} normalized to 'down'")
            return "down"
        self.repaired.append(f"{path}: unknown direction {value!r} defaulted to 'up'")
        return "up"

    def fit(self, value: Any, path: str) -> str:
        v = str(value).strip().lower() if value is not None else ""
        if v in FIT_CONFIDENCE and value == v:
            return v
        if v in _FIT:
            self.normalized.append(f"{path}: {value!r} normalized to {_FIT[v]!r}")
            return _FIT[v]
        self.repaired.append(f"{path}: unknown fit confidence {value!r} defaulted to 'low'")
        return "low"

    def pointer(self, value: Any, path: str) -> str:
        text = self.text(value, path).strip()
        if not text:
            self.repaired.append(f"{path}: empty evidence pointer set to {NOT_AVAILABLE!r}")
            return NOT_AVAILABLE
        if text.lower() == NOT_AVAILABLE.lower() and text != NOT_AVAILABLE:
            self.normalized.append(f"{path}: {text!r} normalized to {NOT_AVAILABLE!r}")
            return NOT_AVAILABLE
        match = _POINTER.match(text)
        if match and text != f"S{match.group(1)}":
            self.normalized.append(f"{path}: {text!r} normalized to 'S{match.group(1)}'")
            return f"S{match.group(1)}"
        return text

    def pointers(self, value: Any, path: str) -> List[str]:
        return [self.pointer(p, f"{path}[{i}]") for i, p in enumerate(self.text_list(value, path))]

    # -- sections ---------------------------------------------------------

    def interestingness(self, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        checks = []
        for i, check in enumerate(self.object_list(value.get("checks"), "interestingness.checks")):
            path = f"interestingness.checks[{i}]"
            checks.append(
                {
                    "check_id": check.get("check_id"),
                    "score": self.score(check.get("score"), f"{path}.score"),
                    "answer": self.text(check.get("answer"), f"{path}.answer"),
                    "evidence_pointers": self.pointers(check.get("evidence_pointers"), f"{path}.evidence_pointers"),
                    "notes": self.optional_text(check.get("notes"), f"{path}.notes"),
                }
            )
        if len(checks) > 6:
            self.repaired.append(f"interestingness.checks: truncated {len(checks)} items to 6")
            checks = checks[:6]
        total = self.score(value.get("total_score"), "interestingness.total_score", upper=12)
        tier = value.get("tier")
        expected = tier_for_score(total)
        if tier != expected:
            self.repaired.append(f"interestingness.tier: {tier!r} recomputed as {expected!r} from total_score")
        return {"total_score": total, "tier": expected, "checks": checks}

    def business_primitives(self, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        selected = [
            self.choice(s, BUSINESS_PRIMITIVES, f"business_primitives.selected[{i}]")
            for i, s in enumerate(self.text_list(value.get("selected"), "business_primitives.selected"))
        ]
        if len(selected) > 2:
            self.repaired.append(f"business_primitives.selected: truncated {len(selected)} items to 2")
            selected = selected[:2]
        return {
            "selected": selected,
            "justification": self.text(value.get("justification"), "business_primitives.justification"),
            "evidence_pointers": self.pointers(
                value.get("evidence_pointers"), "business_primitives.evidence_pointers"
            ),
        }

    def public_views(self, value: Any) -> Any:
        if not isinstance(value, dict):
            return value
        return {
            "hook_sentence": self.text(value.get("hook_sentence"), "public_views.hook_sentence"),
            "30s_summary": self.text_list(value.get("30s_summary"), "public_views.30s_summary"),
            "3m_summary": self.text(value.get("3m_summary"), "public_views.3m_summary"),
            "8m_operator_addendum": self.optional_text(
                value.get("8m_operator_addendum"), "public_views.8m_operator_addendum"
            ),
        }


def coerce_card(raw: Dict[str, Any]) -> CoercedCard:
    """Tier 2: coerce a raw response dict into the PaperCardAnalysis shape."""
    c = _Coercer()
    lists = {name: raw.get(name) for name in LIST_FIELDS}
    for name in LIST_FIELDS:
        if name not in raw:
            c.repaired.append(f"{name}: missing, set to []")
            lists[name] = []

    key_numbers = []
    for i, kn in enumerate(c.object_list(lists["key_numbers"], "key_numbers")):
        path = f"key_numbers[{i}]"
        key_numbers.append(
            {
                "metric_name": c.text(kn.get("metric_name"), f"{path}.metric_name"),
                "value": c.text(kn.get("value"), f"{path}.value"),
                "direction": c.direction(kn.get("direction"), f"{path}.direction"),
                "baseline": c.optional_text(kn.get("baseline"), f"{path}.baseline"),
                "conditions": c.text(kn.get("conditions"), f"{path}.conditions"),
                "evidence_pointer": c.pointer(kn.get("evidence_pointer"), f"{path}.evidence_pointer"),
            }
        )

    constraints = [
        {
            "constraint": c.text(item.get("constraint"), f"constraints[{i}].constraint"),
            "why_it_matters": c.text(item.get("why_it_matters"), f"constraints[{i}].why_it_matters"),
            "evidence_pointer": c.pointer(item.get("evidence_pointer"), f"constraints[{i}].evidence_pointer"),
        }
        for i, item in enumerate(c.object_list(lists["constraints"], "constraints"))
    ]
    failure_modes = [
        {
            "failure_mode": c.text(item.get("failure_mode"), f"failure_modes[{i}].failure_mode"),
            "why_it_matters": c.text(item.get("why_it_matters"), f"failure_modes[{i}].why_it_matters"),
            "evidence_pointer": c.pointer(item.get("evidence_pointer"), f"failure_modes[{i}].evidence_pointer"),
        }
        for i, item in enumerate(c.object_list(lists["failure_modes"], "failure_modes"))
    ]
    mappings = [
        {
            "use_case_id": c.text(item.get("use_case_id"), f"use_case_mapping[{i}].use_case_id"),
            "use_case_name": c.text(item.get("use_case_name"), f"use_case_mapping[{i}].use_case_name"),
            "fit_confidence": c.fit(item.get("fit_confidence"), f"use_case_mapping[{i}].fit_confidence"),
            "because": c.text(item.get("because"), f"use_case_mapping[{i}].because"),
            "evidence_pointers": c.pointers(item.get("evidence_pointers"), f"use_case_mapping[{i}].evidence_pointers"),
        }
        for i, item in enumerate(c.object_list(lists["use_case_mapping"], "use_case_mapping"))
    ]

    proposals_raw = lists["taxonomy_proposals"]
    if isinstance(proposals_raw, list):
        named = [p for p in proposals_raw if isinstance(p, dict) and p.get("proposed_name")]
        if len(named) != len(proposals_raw):
            c.normalized.append(f"taxonomy_proposals: dropped {len(proposals_raw) - len(named)} unnamed proposal(s)")
        proposals_raw = named
    proposals = [
        {
            "type": "use_case",
            "proposed_name": c.text(p.get("proposed_name"), f"taxonomy_proposals[{i}].proposed_name").strip(),
            "definition": c.text(p.get("definition"), f"taxonomy_proposals[{i}].definition"),
            "inclusions": c.text_list(p.get("inclusions") or [], f"taxonomy_proposals[{i}].inclusions"),
            "exclusions": c.text_list(p.get("exclusions") or [], f"taxonomy_proposals[{i}].exclusions"),
            "synonyms": c.text_list(p.get("synonyms") or [], f"taxonomy_proposals[{i}].synonyms"),
            "examples": c.text_list(p.get("examples") or [], f"taxonomy_proposals[{i}].examples"),
            "rationale": c.text(p.get("rationale"), f"taxonomy_proposals[{i}].rationale"),
        }
        for i, p in enumerate(c.object_list(proposals_raw, "taxonomy_proposals"))
    ]

    data = {
        "role": c.choice(raw.get("role"), ROLES, "role"),
        "role_confidence": c.confidence(raw.get("role_confidence"), "role_confidence"),
        "time_to_value": c.choice(raw.get("time_to_value"), TIME_TO_VALUE, "time_to_value"),
        "time_to_value_confidence": c.confidence(raw.get("time_to_value_confidence"), "time_to_value_confidence"),
        "interestingness": c.interestingness(raw.get("interestingness")),
        "business_primitives": c.business_primitives(raw.get("business_primitives")),
        "key_numbers": key_numbers,
        "constraints": constraints,
        "failure_modes": failure_modes,
        "what_is_missing": c.text_list(lists["what_is_missing"], "what_is_missing"),
        "readiness_level": c.choice(raw.get("readiness_level"), READINESS_LEVELS, "readiness_level"),
        "readiness_justification": c.text(raw.get("readiness_justification"), "readiness_justification"),
        "readiness_evidence_pointers": c.pointers(lists["readiness_evidence_pointers"], "readiness_evidence_pointers"),
        "use_case_mapping": mappings,
        "taxonomy_proposals": proposals,
        "public_views": c.public_views(raw.get("public_views")),
    }
    return CoercedCard(data=data, normalized=c.normalized, repaired=c.repaired)

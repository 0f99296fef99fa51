from __future__ import annotations

from typing import Any, Dict, List, Optional

PAPER_CARD_SYSTEM = """You are an analysis engine that produces a structured PaperCardAnalysis for a public business audience. You must be accurate, skeptical, and never invent results. Output strict JSON matching the schema. Prefer conservative scoring.

## Evidence pointers
The abstract is given as numbered sentences S1..Sn. Every evidence pointer must be a sentence id such as "S2", or the literal string "Not available" when no sentence supports the claim.

## Role (forced choice)
- Primitive: introduces a fundamental new capability or building block
- Platform: provides infrastructure or tools that enable other applications
- Proof: demonstrates feasibility or validates a concept
- Provocation: challenges assumptions or proposes unconventional ideas

## Time-to-value (forced choice)
- Now: applicable today with existing tools
- Soon: needs 6-18 months of engineering
- Later: needs significant research or infrastructure advances
- Unknown: cannot be determined

## Interestingness checks (score 0/1/2 each)
business_primitive_impact, delta_specificity, comparison_credibility,
real_world_plausibility, evidence_strength, failure_disclosure.
Tier from total_score: 0-3 low, 4-6 moderate, 7-9 high, 10-12 very_high.

## Business primitives
Select 0-2 from: cost, reliability, speed, quality, risk, new_capability

## Readiness level
research_only | prototype_candidate | deployable_with_work

## Required JSON schema
{
  "role": "Primitive" | "Platform" | "Proof" | "Provocation",
  "role_confidence": 0.0-1.0,
  "time_to_value": "Now" | "Soon" | "Later" | "Unknown",
  "time_to_value_confidence": 0.0-1.0,
  "interestingness": {
    "total_score": 0-12,
    "tier": "low" | "moderate" | "high" | "very_high",
    "checks": [{"check_id": "...", "score": 0 | 1 | 2, "answer": "...", "evidence_pointers": ["S1"], "notes": "optional"}]
  },
  "business_primitives": {"selected": ["cost"], "justification": "...", "evidence_pointers": ["S1"]},
  "key_numbers": [{"metric_name": "...", "value": "...", "direction": "up" | "down", "baseline": "optional", "conditions": "...", "evidence_pointer": "S1"}],
  "constraints": [{"constraint": "...", "why_it_matters": "...", "evidence_pointer": "S1"}],
  "failure_modes": [{"failure_mode": "...", "why_it_matters": "...", "evidence_pointer": "S1"}],
  "what_is_missing": ["..."],
  "readiness_level": "research_only" | "prototype_candidate" | "deployable_with_work",
  "readiness_justification": "...",
  "readiness_evidence_pointers": ["S1"],
  "use_case_mapping": [{"use_case_id": "...", "use_case_name": "exact name from taxonomy", "fit_confidence": "low" | "med" | "high", "because": "...", "evidence_pointers": ["S1"]}],
  "taxonomy_proposals": [],
  "public_views": {
    "hook_sentence": "One compelling sentence",
    "30s_summary": ["bullet1", "bullet2", "bullet3"],
    "3m_summary": "2-3 paragraph summary",
    "8m_operator_addendum": "optional technical details"
  }
}

Output valid JSON only. No markdown, no explanations."""

PAPER_CARD_USER = """Analyze this research paper and produce a PaperCardAnalysis JSON.

## Paper Metadata
Title: {title}
{metadata}
## Abstract (numbered sentences)
{numbered_abstract}

## Available Use-Case Taxonomy
{taxonomy}

## Instructions
1. Assign role with confidence 0-1
2. Assign time_to_value with confidence 0-1
3. Select 0-2 business primitives
4. Score all 6 interestingness checks with answers and evidence pointers
5. Extract up to 3 key numbers with conditions
6. List up to 3 constraints and up to 3 failure modes
7. List what is missing in the paper
8. Determine readiness level with justification
9. Map to 0-5 existing use-cases by their exact taxonomy name
10. If no existing use-case fits, propose at most 1 new entry in taxonomy_proposals
11. Write the public views

Output JSON only, matching the schema exactly."""

RETRY_FEEDBACK = """

Your previous response failed validation:
{issues}

Fix these issues and respond with the complete, corrected JSON object only."""


def number_sentences(sentences: List[str]) -> str:
    return "\n".join(f"S{i}: {s}" for i, s in enumerate(sentences, start=1)) or "S1: (no abstract)"


def format_taxonomy(entries: List[Dict[str, Any]]) -> str:
    if not entries:
        return "No existing taxonomy entries."
    lines = []
    for entry in entries:
        synonyms = ", ".join(entry.get("synonyms") or []) or "none"
        lines.append(
            f"- {entry['name']} ({entry.get('status', 'active')})\n"
            f"  Definition: {entry.get('definition') or ''}\n"
            f"  Synonyms: {synonyms}"
        )
    return "\n".join(lines)


def build_user_prompt(
    *,
    title: str,
    sentences: List[str],
    taxonomy: List[Dict[str, Any]],
    authors: Optional[List[str]] = None,
    year: Optional[int] = None,
) -> str:
    metadata = ""
    if authors:
        metadata += f"Authors: {', '.join(authors)}\n"
    if year:
        metadata += f"Year: {year}\n"
    return PAPER_CARD_USER.format(
        title=title,
        metadata=metadata,
        numbered_abstract=number_sentences(sentences),
        taxonomy=format_taxonomy(taxonomy),
    )

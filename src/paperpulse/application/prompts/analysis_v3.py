from __future__ import annotations

from typing import List, Optional

ANALYSIS_V3_SYSTEM = """You are a research paper analyst for a product-savvy audience. Your job is to help a busy, technically literate person decide which AI papers are worth their time.

You analyze paper abstracts and produce structured JSON output. Your analysis should be:
- Practical: focus on real-world implications, not academic significance
- Honest: if the abstract is vague, say so; do not inflate claims
- Concrete: prefer specific statements over general ones
- Deterministic: base every field on observable content in the abstract

Never invent claims not supported by the abstract. If information is missing, say so explicitly."""

ANALYSIS_V3_USER = """Analyze this paper abstract:

Title: {title}
Authors: {authors}
Published: {published}
Categories: {categories}

Abstract:
{abstract}

Produce a JSON response with exactly these fields:

1. hook_sentence: one sentence (max 120 chars): what they did + why it matters practically.
2. what_kind: exactly one of: "New Method", "New Model", "Infrastructure / Tooling", "Benchmark / Evaluation", "Dataset", "Application Study", "Survey / Review", "Scaling Study", "Safety / Alignment"
3. time_to_value: exactly one of: "Now", "Soon", "Later", "Unknown"
4. impact_area_tags: 1-3 of: "Reasoning & Planning", "Tool Use & Agents", "Cost & Efficiency", "Context & Memory", "Human-AI Interaction", "Code & Engineering", "Multimodal", "Safety & Trust", "Training & Data", "Domain-Specific AI"
5. practical_value_score: object with real_problem, concrete_result, actually_usable (each 0, 1 or 2) and total (their sum)
6. key_numbers: up to 3 objects with metric, value, direction ("up" or "down"), baseline (string or null), conditions
7. readiness_level: exactly one of: "Research Only", "Needs Engineering", "Ready to Try"
8. how_this_changes_things: 2-3 strings of the form "[who] could [experience what change], [outcome]." written for people who use AI products
9. what_came_before: one sentence of context about prior work; if none is mentioned say "No prior work referenced in abstract."

Respond with valid JSON only. No markdown, no explanation, no preamble."""

RETRY_FEEDBACK = """

Your previous response had validation errors: {issues}

Please fix these issues and respond with valid JSON only."""


def build_user_prompt(
    *,
    title: str,
    abstract: str,
    authors: Optional[List[str]] = None,
    published: Optional[str] = None,
    categories: Optional[List[str]] = None,
) -> str:
    return ANALYSIS_V3_USER.format(
        title=title,
        authors=", ".join(authors or []) or "Unknown",
        published=published or "Unknown",
        categories=", ".join(categories or []) or "Unknown",
        abstract=abstract,
    )

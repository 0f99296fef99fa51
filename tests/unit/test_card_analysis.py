from __future__ import annotations

import json

import pytest

from paperpulse.application.services.card_coercion import coerce_card, strict_required_issues
from paperpulse.application.services.paper_card_analysis import PaperCardAnalyzer
from paperpulse.domain.card_analysis import (
    NOT_AVAILABLE,
    PaperCardAnalysis,
    check_evidence_pointer,
    derive_status,
    split_sentences,
    tier_for_score,
)
from paperpulse.domain.errors import AnalysisValidationError
from tests.fakes import FakeLLM, sample_card

ABSTRACT = "We propose a method. It improves accuracy by 12%. It runs on one GPU."


async def _analyze(llm):
    return await PaperCardAnalyzer(llm, model="test/model").analyze(
        title="A method", abstract=ABSTRACT, taxonomy=[], authors=["Ada Lovelace"], year=2024
    )


@pytest.mark.parametrize("total,tier", [(0, "low"), (3, "low"), (4, "moderate"), (6, "moderate"), (9, "high"), (10, "very_high")])
def test_tier_for_score(total, tier):
    assert tier_for_score(total) == tier


def test_split_sentences_numbers_abstract():
    assert split_sentences(ABSTRACT) == ["We propose a method.", "It improves accuracy by 12%.", "It runs on one GPU."]
    assert split_sentences("   ") == []


def test_evidence_pointer_checks():
    assert check_evidence_pointer("S2", 3) is None
    assert check_evidence_pointer(NOT_AVAILABLE, 3) is None
    assert "out of range" in check_evidence_pointer("S4", 3)
    assert "malformed" in check_evidence_pointer("sentence two", 3)


def test_strict_pass_flags_missing_and_empty_fields():
    card = sample_card(role="")
    card["public_views"] = {"hook_sentence": "Hook", "30s_summary": [], "3m_summary": "Text"}
    issues = strict_required_issues(card)
    assert "role: missing or empty" in issues
    assert "public_views.30s_summary: missing or empty" in issues
    assert strict_required_issues([1, 2]) == ["(root): expected a JSON object"]


def test_coercion_normalizes_cosmetic_differences():
    card = sample_card(role="primitive", role_confidence="0.8")
    card["key_numbers"][0]["direction"] = "Higher"
    card["key_numbers"][0]["evidence_pointer"] = "s 2"
    card["use_case_mapping"] = [
        {
            "use_case_id": "uc-1",
            "use_case_name": "Search",
            "fit_confidence": "Medium",
            "because": "Better ranking.",
            "evidence_pointers": ["sentence 1"],
        }
    ]

    coerced = coerce_card(card)

    assert coerced.repaired == []
    assert coerced.data["role"] == "Primitive"
    assert coerced.data["key_numbers"][0]["direction"] == "up"
    assert coerced.data["key_numbers"][0]["evidence_pointer"] == "S2"
    assert coerced.data["use_case_mapping"][0]["fit_confidence"] == "med"
    assert coerced.data["use_case_mapping"][0]["evidence_pointers"] == ["S1"]
    PaperCardAnalysis.model_validate(coerced.data)


def test_coercion_repairs_out_of_range_values():
    card = sample_card(role_confidence=1.7)
    card["interestingness"]["tier"] = "very_high"
    card["interestingness"]["checks"][0]["score"] = 5
    del card["what_is_missing"]

    coerced = coerce_card(card)

    assert coerced.data["role_confidence"] == 1.0
    assert coerced.data["interestingness"]["tier"] == "moderate"
    assert coerced.data["interestingness"]["checks"][0]["score"] == 2
    assert coerced.data["what_is_missing"] == []
    assert len(coerced.repaired) == 4


def test_partial_wins_over_low_confidence():
    analysis = PaperCardAnalysis.model_validate(coerce_card(sample_card(role_confidence=0.2)).data)
    assert derive_status(analysis, strict_issues=[], repairs=[]) == "low_confidence"
    assert derive_status(analysis, strict_issues=[], repairs=["x: fixed"]) == "partial"


@pytest.mark.asyncio
async def test_valid_reply_is_complete_in_one_call():
    llm = FakeLLM("```json\n" + json.dumps(sample_card()) + "\n```")
    result = await _analyze(llm)

    assert len(llm.calls) == 1
    assert result.status == "complete"
    assert result.tokens_used == 1000
    assert result.validation_warnings == []
    assert result.analysis.public_views.thirty_second_summary == ["New method.", "12% more accurate."]
    assert len(result.prompt_hash) == 64


@pytest.mark.asyncio
async def test_invalid_reply_is_retried_with_feedback():
    broken = sample_card()
    del broken["role"]
    llm = FakeLLM(broken, sample_card())

    result = await _analyze(llm)

    assert len(llm.calls) == 2
    assert "failed validation" in llm.calls[1]["user"]
    assert "role: missing or empty" in llm.calls[1]["user"]
    assert result.status == "complete"
    assert result.tokens_used == 2000


@pytest.mark.asyncio
async def test_two_unusable_replies_raise():
    llm = FakeLLM("not json at all", {"role": "Primitive"})
    with pytest.raises(AnalysisValidationError) as info:
        await _analyze(llm)
    assert len(llm.calls) == 2
    assert info.value.issues[0].startswith("attempt1:")
    assert any(i.startswith("attempt2:") for i in info.value.issues)


@pytest.mark.asyncio
async def test_first_reply_kept_as_partial_when_retry_is_worse():
    gappy = sample_card()
    gappy["public_views"]["hook_sentence"] = ""
    llm = FakeLLM(gappy, "still not json")

    result = await _analyze(llm)

    assert len(llm.calls) == 2
    assert result.status == "partial"
    assert "public_views.hook_sentence: missing or empty" in result.validation_errors


@pytest.mark.asyncio
async def test_out_of_range_pointer_is_a_warning_only():
    card = sample_card()
    card["constraints"][0]["evidence_pointer"] = "S9"
    result = await _analyze(FakeLLM(card))

    assert result.status == "complete"
    assert result.validation_warnings == [
        "constraints[0]: evidence pointer S9 out of range (abstract has 3 sentences)"
    ]

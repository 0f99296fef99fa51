"""
DTL-P job against real stores: persistence, taxonomy mapping and proposals.
"""

from __future__ import annotations

from types import SimpleNamespace

import pytest

pytest.importorskip("arq", reason="arq not installed")

from paperpulse.application.seeds.taxonomy_seed import load_seed_entries, seed_taxonomy
from paperpulse.application.services.paper_card_analysis import PaperCardAnalyzer
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.application.workflows.ai_jobs import queue_card_analyses
from paperpulse.application.workflows.card_analysis_job import CardAnalysisJob, clean_use_case_name
from paperpulse.domain.errors import PaperNotFoundError
from paperpulse.infrastructure.queue.arq_worker import card_analysis_job
from paperpulse.infrastructure.queue.job_queue import PAPER_ANALYSIS, JobQueue
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.stores.analysis_store import CardAnalysisStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from tests.fakes import FakeLLM, FakeRedis, make_record, sample_card

SEARCH = "Enterprise search and retrieval"


def _mapped_card():
    return sample_card(
        use_case_mapping=[
            {
                "use_case_id": "uc-1",
                "use_case_name": f"{SEARCH} (active)",
                "fit_confidence": "high",
                "because": "Better retrieval accuracy.",
                "evidence_pointers": ["S2"],
            },
            {
                "use_case_id": "uc-x",
                "use_case_name": "Underwater basket weaving",
                "fit_confidence": "low",
                "because": "No.",
                "evidence_pointers": ["S1"],
            },
        ],
        taxonomy_proposals=[
            {
                "proposed_name": "Edge inference",
                "definition": "Running models on small devices.",
                "inclusions": ["On-device models"],
                "exclusions": [],
                "synonyms": ["TinyML"],
                "examples": ["Phone keyboard model"],
                "rationale": "Runs on one GPU.",
            }
        ],
    )


@pytest.fixture
def stores(db_url):
    analyses = CardAnalysisStore(db_url)
    seed_taxonomy(analyses)
    return PaperStore(db_url), analyses


def _job(llm, stores):
    papers, analyses = stores
    return CardAnalysisJob(PaperCardAnalyzer(llm), paper_store=papers, analysis_store=analyses)


def test_clean_use_case_name():
    assert clean_use_case_name("Enterprise search (active)") == "Enterprise search"
    assert clean_use_case_name("  Edge inference ") == "Edge inference"


def test_seed_is_idempotent(db_url):
    analyses = CardAnalysisStore(db_url)
    assert seed_taxonomy(analyses) == len(load_seed_entries())
    assert seed_taxonomy(analyses) == 0
    assert all(e["status"] == "active" for e in analyses.list_taxonomy())


@pytest.mark.asyncio
async def test_job_persists_maps_and_proposes(stores):
    papers, analyses = stores
    paper_id = papers.insert_paper(make_record("2401.00001"))
    llm = FakeLLM(_mapped_card())

    result = await _job(llm, stores).run(paper_id)

    assert result.status == "complete"
    assert result.mappings_added == 1
    assert result.dropped_use_cases == ["Underwater basket weaving"]
    assert result.proposals_added == 1

    stored = analyses.get_analysis(paper_id)
    assert stored["role"] == "Primitive"
    assert stored["interest_score"] == 6
    assert stored["public_views"]["30s_summary"] == ["New method.", "12% more accurate."]
    (mapping,) = analyses.list_mappings(stored["id"])
    assert mapping["name"] == SEARCH
    assert analyses.find_taxonomy_by_name(SEARCH)["usage_count"] == 1
    assert analyses.find_taxonomy_by_name("Edge inference")["status"] == "provisional"
    # The taxonomy is offered to the model in the prompt
    assert SEARCH in llm.calls[0]["user"]


@pytest.mark.asyncio
async def test_existing_analysis_is_skipped_unless_forced(stores):
    papers, analyses = stores
    paper_id = papers.insert_paper(make_record("2401.00001"))
    llm = FakeLLM(sample_card(), sample_card(role="Platform"))
    job = _job(llm, stores)

    await job.run(paper_id)
    skipped = await job.run(paper_id)
    assert skipped.skipped
    assert len(llm.calls) == 1

    forced = await job.run(paper_id, force=True)
    assert forced.status == "complete"
    assert analyses.get_analysis(paper_id)["role"] == "Platform"


@pytest.mark.asyncio
async def test_queued_payload_runs_through_worker(stores):
    papers, analyses = stores
    paper_id = papers.insert_paper(make_record("2401.00001"))
    redis = FakeRedis()
    config = RuntimeConfigService(RedisConfigStore(redis))
    await config.set_ai_enabled(True)

    await queue_card_analyses(papers, JobQueue(redis), config, model="test/model")
    (queued,) = redis.jobs_on(PAPER_ANALYSIS)
    services = SimpleNamespace(llm=FakeLLM(sample_card()), paper_store=papers, analysis_store=analyses)
    ctx = {"redis": redis, "queue_name": PAPER_ANALYSIS, "job_id": queued["job_id"], "services": services}

    result = await card_analysis_job(ctx, *queued["args"])

    assert result["status"] == "complete"
    assert "batch_completed" not in result
    assert analyses.get_analysis(paper_id) is not None


@pytest.mark.asyncio
async def test_missing_paper(stores):
    with pytest.raises(PaperNotFoundError):
        await _job(FakeLLM(sample_card()), stores).run(404)

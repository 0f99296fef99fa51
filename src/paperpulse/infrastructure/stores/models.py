from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _load_list(raw: Optional[str]) -> list:
    try:
        value = json.loads(raw or "[]")
    except (TypeError, ValueError):
        return []
    return value if isinstance(value, list) else []


def _load_dict(raw: Optional[str]) -> Dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


class PaperModel(Base):
    """Ingested paper; (source, external_id) is its identity."""

    __tablename__ = "papers"
    __table_args__ = (UniqueConstraint("source", "external_id", name="uq_papers_source_external"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32), default="arxiv", index=True)
    external_id: Mapped[str] = mapped_column(String(64), index=True)

    title: Mapped[str] = mapped_column(Text, default="")
    abstract: Mapped[str] = mapped_column(Text, default="")
    authors_json: Mapped[str] = mapped_column(Text, default="[]")
    categories_json: Mapped[str] = mapped_column(Text, default="[]")
    primary_category: Mapped[str] = mapped_column(String(32), default="", index=True)
    pdf_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    doi: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    published_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    fetched_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    # AI summary fields, the only ones rewritten after ingestion
    summary_bullets_json: Mapped[str] = mapped_column(Text, default="[]")
    summary_eli5: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary_model: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    summary_generated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    def get_authors(self) -> List[Dict[str, Any]]:
        return _load_list(self.authors_json)

    def get_categories(self) -> List[str]:
        return _load_list(self.categories_json)

    def get_summary_bullets(self) -> List[str]:
        return _load_list(self.summary_bullets_json)

    def set_authors(self, authors: List[Dict[str, Any]]) -> None:
        self.authors_json = _dump(authors or [])

    def set_categories(self, categories: List[str]) -> None:
        self.categories_json = _dump(categories or [])

    def set_summary_bullets(self, bullets: List[str]) -> None:
        self.summary_bullets_json = _dump(list(bullets or []))


class PaperCardAnalysisModel(Base):
    """DTL-P analysis, one row per (paper, analysis_version)."""

    __tablename__ = "paper_card_analyses"
    __table_args__ = (
        UniqueConstraint("paper_id", "analysis_version", name="uq_card_analysis_paper_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), index=True)
    analysis_version: Mapped[str] = mapped_column(String(32), default="dtlp_v1")

    role: Mapped[str] = mapped_column(String(32), default="")
    role_confidence: Mapped[float] = mapped_column(Float, default=0.0)
    time_to_value: Mapped[str] = mapped_column(String(16), default="")
    time_to_value_confidence: Mapped[float] = mapped_column(Float, default=0.0)

    interest_score: Mapped[int] = mapped_column(Integer, default=0, index=True)
    interest_tier: Mapped[str] = mapped_column(String(16), default="")
    interestingness_json: Mapped[str] = mapped_column(Text, default="{}")
    business_primitives_json: Mapped[str] = mapped_column(Text, default="{}")
    key_numbers_json: Mapped[str] = mapped_column(Text, default="[]")
    constraints_json: Mapped[str] = mapped_column(Text, default="[]")
    failure_modes_json: Mapped[str] = mapped_column(Text, default="[]")
    what_is_missing_json: Mapped[str] = mapped_column(Text, default="[]")

    readiness_level: Mapped[str] = mapped_column(String(32), default="")
    readiness_justification: Mapped[str] = mapped_column(Text, default="")
    readiness_evidence_pointers_json: Mapped[str] = mapped_column(Text, default="[]")

    public_views_json: Mapped[str] = mapped_column(Text, default="{}")
    taxonomy_proposals_json: Mapped[str] = mapped_column(Text, default="[]")

    prompt_hash: Mapped[str] = mapped_column(String(64), default="", index=True)
    analysis_status: Mapped[str] = mapped_column(String(16), default="complete", index=True)
    validation_errors_json: Mapped[str] = mapped_column(Text, default="[]")
    validation_warnings_json: Mapped[str] = mapped_column(Text, default="[]")
    analysis_model: Mapped[str] = mapped_column(String(128), default="")
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    mappings = relationship(
        "PaperUseCaseMappingModel", back_populates="analysis", cascade="all, delete-orphan"
    )

    def get_public_views(self) -> Dict[str, Any]:
        return _load_dict(self.public_views_json)

    def get_validation_errors(self) -> List[str]:
        return _load_list(self.validation_errors_json)

    def get_validation_warnings(self) -> List[str]:
        return _load_list(self.validation_warnings_json)


class TaxonomyEntryModel(Base):
    """Use-case category. LLM proposals land as 'provisional'."""

    __tablename__ = "taxonomy_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    type: Mapped[str] = mapped_column(String(32), default="use_case", index=True)
    name: Mapped[str] = mapped_column(String(256), unique=True, index=True)
    definition: Mapped[str] = mapped_column(Text, default="")
    inclusions_json: Mapped[str] = mapped_column(Text, default="[]")
    exclusions_json: Mapped[str] = mapped_column(Text, default="[]")
    examples_json: Mapped[str] = mapped_column(Text, default="[]")
    synonyms_json: Mapped[str] = mapped_column(Text, default="[]")
    status: Mapped[str] = mapped_column(String(16), default="provisional", index=True)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, default=1)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def get_synonyms(self) -> List[str]:
        return _load_list(self.synonyms_json)


class PaperUseCaseMappingModel(Base):
    __tablename__ = "paper_use_case_mappings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    analysis_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("paper_card_analyses.id", ondelete="CASCADE"), index=True
    )
    taxonomy_entry_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("taxonomy_entries.id"), index=True
    )
    fit_confidence: Mapped[str] = mapped_column(String(8), default="low")
    because: Mapped[str] = mapped_column(Text, default="")
    evidence_pointers_json: Mapped[str] = mapped_column(Text, default="[]")

    analysis = relationship("PaperCardAnalysisModel", back_populates="mappings")


class PaperAnalysisV3Model(Base):
    """V3 analysis, one row per (paper, analysis_version)."""

    __tablename__ = "paper_analyses_v3"
    __table_args__ = (
        UniqueConstraint("paper_id", "analysis_version", name="uq_analysis_v3_paper_version"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), index=True)
    analysis_version: Mapped[str] = mapped_column(String(16), default="v3")

    hook_sentence: Mapped[str] = mapped_column(Text, default="")
    what_kind: Mapped[str] = mapped_column(String(64), default="")
    time_to_value: Mapped[str] = mapped_column(String(16), default="")
    impact_area_tags_json: Mapped[str] = mapped_column(Text, default="[]")

    real_problem: Mapped[int] = mapped_column(Integer, default=0)
    concrete_result: Mapped[int] = mapped_column(Integer, default=0)
    actually_usable: Mapped[int] = mapped_column(Integer, default=0)
    practical_value_total: Mapped[int] = mapped_column(Integer, default=0, index=True)

    key_numbers_json: Mapped[str] = mapped_column(Text, default="[]")
    readiness_level: Mapped[str] = mapped_column(String(32), default="")
    how_this_changes_things_json: Mapped[str] = mapped_column(Text, default="[]")
    what_came_before: Mapped[str] = mapped_column(Text, default="")

    analysis_status: Mapped[str] = mapped_column(String(16), default="complete", index=True)
    validation_errors_json: Mapped[str] = mapped_column(Text, default="[]")
    analysis_model: Mapped[str] = mapped_column(String(128), default="")
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    prompt_hash: Mapped[str] = mapped_column(String(64), default="")
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AnalysisBatchModel(Base):
    __tablename__ = "analysis_batches"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_size: Mapped[int] = mapped_column(Integer, default=0)
    completed: Mapped[int] = mapped_column(Integer, default=0)
    failed: Mapped[int] = mapped_column(Integer, default=0)
    status: Mapped[str] = mapped_column(String(16), default="running", index=True)
    model: Mapped[str] = mapped_column(String(128), default="")
    scope: Mapped[str] = mapped_column(String(32), default="newest")
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class AnalysisBatchJobModel(Base):
    __tablename__ = "analysis_batch_jobs"
    __table_args__ = (UniqueConstraint("batch_id", "paper_id", name="uq_batch_job_paper"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # None for one-off test analyses
    batch_id: Mapped[Optional[int]] = mapped_column(
        Integer, ForeignKey("analysis_batches.id"), nullable=True, index=True
    )
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), index=True)
    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    queue_job_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tokens_used: Mapped[int] = mapped_column(Integer, default=0)
    cost_cents: Mapped[int] = mapped_column(Integer, default=0)
    processing_time_ms: Mapped[int] = mapped_column(Integer, default=0)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )


class IngestionRunModel(Base):
    """Ledger row per (run_date, category) for date-based ingestion."""

    __tablename__ = "ingestion_runs"
    __table_args__ = (UniqueConstraint("run_date", "category", name="uq_ingestion_run_date_cat"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    run_date: Mapped[str] = mapped_column(String(10), index=True)  # YYYY-MM-DD
    category: Mapped[str] = mapped_column(String(32))
    status: Mapped[str] = mapped_column(String(16), default="running", index=True)
    expected_total: Mapped[int] = mapped_column(Integer, default=0)
    fetched: Mapped[int] = mapped_column(Integer, default=0)
    inserted: Mapped[int] = mapped_column(Integer, default=0)
    cursor: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SocialMentionModel(Base):
    __tablename__ = "social_mentions"
    __table_args__ = (
        UniqueConstraint("platform", "external_id", name="uq_social_mention_platform_ext"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), index=True)
    platform: Mapped[str] = mapped_column(String(16), index=True)
    external_id: Mapped[str] = mapped_column(String(256))
    author_handle: Mapped[str] = mapped_column(String(256), default="")
    author_name: Mapped[str] = mapped_column(String(256), default="")
    content: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(String(512), default="")
    likes: Mapped[int] = mapped_column(Integer, default=0)
    reposts: Mapped[int] = mapped_column(Integer, default=0)
    replies: Mapped[int] = mapped_column(Integer, default=0)
    content_hash: Mapped[str] = mapped_column(String(32), default="")
    posted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class NewsMentionModel(Base):
    __tablename__ = "news_mentions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    paper_id: Mapped[int] = mapped_column(Integer, ForeignKey("papers.id"), index=True)
    title: Mapped[str] = mapped_column(Text, default="")
    snippet: Mapped[str] = mapped_column(Text, default="")
    url: Mapped[str] = mapped_column(String(1024), default="")
    source_name: Mapped[str] = mapped_column(String(256), default="")
    published: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    url_hash: Mapped[str] = mapped_column(String(32), unique=True, index=True)
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

"""paper analysis tables

Revision ID: 0002_paper_analysis_tables
Revises: 0001_paper_ingestion_tables
Create Date: 2026-10-02

Adds:
- paper_card_analyses: DTL-P analyses with validation status
- taxonomy_entries / paper_use_case_mappings: use-case taxonomy and links
- paper_analyses_v3: v3 analyses
- analysis_batches / analysis_batch_jobs: v3 batch tracking and spend
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import context, op

revision = "0002_paper_analysis_tables"
down_revision = "0001_paper_ingestion_tables"
branch_labels = None
depends_on = None


def _is_offline() -> bool:
    try:
        return bool(context.is_offline_mode())
    except Exception:
        return False


def _insp():
    return sa.inspect(op.get_bind())


def _has_table(name: str) -> bool:
    return _insp().has_table(name)


def _get_indexes(table: str) -> set[str]:
    return {str(i.get("name") or "") for i in _insp().get_indexes(table)}


def _create_index(name: str, table: str, cols: list[str], *, unique: bool = False) -> None:
    if not _is_offline() and name in _get_indexes(table):
        return
    op.create_index(name, table, cols, unique=unique)


def upgrade() -> None:
    _upgrade_create_tables()
    _upgrade_create_indexes()


def _upgrade_create_tables() -> None:
    if _is_offline() or not _has_table("paper_card_analyses"):
        op.create_table(
            "paper_card_analyses",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("paper_id", sa.Integer(), sa.ForeignKey("papers.id"), nullable=False),
            sa.Column("analysis_version", sa.String(length=32), server_default="dtlp_v1", nullable=False),
            # Classification
            sa.Column("role", sa.String(length=32), server_default="", nullable=False),
            sa.Column("role_confidence", sa.Float(), server_default="0", nullable=False),
            sa.Column("time_to_value", sa.String(length=16), server_default="", nullable=False),
            sa.Column("time_to_value_confidence", sa.Float(), server_default="0", nullable=False),
            # Scoring
            sa.Column("interest_score", sa.Integer(), server_default="0", nullable=False),
            sa.Column("interest_tier", sa.String(length=16), server_default="", nullable=False),
            sa.Column("interestingness_json", sa.Text(), server_default="{}", nullable=False),
            sa.Column("business_primitives_json", sa.Text(), server_default="{}", nullable=False),
            # Evidence
            sa.Column("key_numbers_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("constraints_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("failure_modes_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("what_is_missing_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("readiness_level", sa.String(length=32), server_default="", nullable=False),
            sa.Column("readiness_justification", sa.Text(), server_default="", nullable=False),
            sa.Column("readiness_evidence_pointers_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("public_views_json", sa.Text(), server_default="{}", nullable=False),
            sa.Column("taxonomy_proposals_json", sa.Text(), server_default="[]", nullable=False),
            # Provenance
            sa.Column("prompt_hash", sa.String(length=64), server_default="", nullable=False),
            sa.Column("analysis_status", sa.String(length=16), server_default="complete", nullable=False),
            sa.Column("validation_errors_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("validation_warnings_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("analysis_model", sa.String(length=128), server_default="", nullable=False),
            sa.Column("tokens_used", sa.Integer(), server_default="0", nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("paper_id", "analysis_version", name="uq_card_analysis_paper_version"),
        )

    if _is_offline() or not _has_table("taxonomy_entries"):
        op.create_table(
            "taxonomy_entries",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("type", sa.String(length=32), server_default="use_case", nullable=False),
            sa.Column("name", sa.String(length=256), nullable=False),
            sa.Column("definition", sa.Text(), server_default="", nullable=False),
            sa.Column("inclusions_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("exclusions_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("examples_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("synonyms_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("status", sa.String(length=16), server_default="provisional", nullable=False),
            sa.Column("usage_count", sa.Integer(), server_default="0", nullable=False),
            sa.Column("version", sa.Integer(), server_default="1", nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )

    if _is_offline() or not _has_table("paper_use_case_mappings"):
        op.create_table(
            "paper_use_case_mappings",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column(
                "analysis_id",
                sa.Integer(),
                sa.ForeignKey("paper_card_analyses.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("taxonomy_entry_id", sa.Integer(), sa.ForeignKey("taxonomy_entries.id"), nullable=False),
            sa.Column("fit_confidence", sa.String(length=8), server_default="low", nullable=False),
            sa.Column("because", sa.Text(), server_default="", nullable=False),
            sa.Column("evidence_pointers_json", sa.Text(), server_default="[]", nullable=False),
        )

    if _is_offline() or not _has_table("paper_analyses_v3"):
        op.create_table(
            "paper_analyses_v3",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("paper_id", sa.Integer(), sa.ForeignKey("papers.id"), nullable=False),
            sa.Column("analysis_version", sa.String(length=16), server_default="v3", nullable=False),
            sa.Column("hook_sentence", sa.Text(), server_default="", nullable=False),
            sa.Column("what_kind", sa.String(length=64), server_default="", nullable=False),
            sa.Column("time_to_value", sa.String(length=16), server_default="", nullable=False),
            sa.Column("impact_area_tags_json", sa.Text(), server_default="[]", nullable=False),
            # Practical value sub-scores; total is recomputed, never trusted from the model
            sa.Column("real_problem", sa.Integer(), server_default="0", nullable=False),
            sa.Column("concrete_result", sa.Integer(), server_default="0", nullable=False),
            sa.Column("actually_usable", sa.Integer(), server_default="0", nullable=False),
            sa.Column("practical_value_total", sa.Integer(), server_default="0", nullable=False),
            sa.Column("key_numbers_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("readiness_level", sa.String(length=32), server_default="", nullable=False),
            sa.Column("how_this_changes_things_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("what_came_before", sa.Text(), server_default="", nullable=False),
            sa.Column("analysis_status", sa.String(length=16), server_default="complete", nullable=False),
            sa.Column("validation_errors_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("analysis_model", sa.String(length=128), server_default="", nullable=False),
            sa.Column("tokens_used", sa.Integer(), server_default="0", nullable=False),
            sa.Column("prompt_hash", sa.String(length=64), server_default="", nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("paper_id", "analysis_version", name="uq_analysis_v3_paper_version"),
        )

    if _is_offline() or not _has_table("analysis_batches"):
        op.create_table(
            "analysis_batches",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("batch_size", sa.Integer(), server_default="0", nullable=False),
            sa.Column("completed", sa.Integer(), server_default="0", nullable=False),
            sa.Column("failed", sa.Integer(), server_default="0", nullable=False),
            sa.Column("status", sa.String(length=16), server_default="running", nullable=False),
            sa.Column("model", sa.String(length=128), server_default="", nullable=False),
            sa.Column("scope", sa.String(length=32), server_default="newest", nullable=False),
            sa.Column("total_tokens", sa.Integer(), server_default="0", nullable=False),
            sa.Column("total_cost_cents", sa.Integer(), server_default="0", nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        )

    if _is_offline() or not _has_table("analysis_batch_jobs"):
        op.create_table(
            "analysis_batch_jobs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            # NULL for one-off test analyses
            sa.Column("batch_id", sa.Integer(), sa.ForeignKey("analysis_batches.id"), nullable=True),
            sa.Column("paper_id", sa.Integer(), sa.ForeignKey("papers.id"), nullable=False),
            sa.Column("status", sa.String(length=16), server_default="pending", nullable=False),
            sa.Column("queue_job_id", sa.String(length=128), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("tokens_used", sa.Integer(), server_default="0", nullable=False),
            sa.Column("cost_cents", sa.Integer(), server_default="0", nullable=False),
            sa.Column("processing_time_ms", sa.Integer(), server_default="0", nullable=False),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("batch_id", "paper_id", name="uq_batch_job_paper"),
        )


def _upgrade_create_indexes() -> None:
    _create_index("ix_paper_card_analyses_paper_id", "paper_card_analyses", ["paper_id"])
    _create_index("ix_paper_card_analyses_interest_score", "paper_card_analyses", ["interest_score"])
    _create_index("ix_paper_card_analyses_prompt_hash", "paper_card_analyses", ["prompt_hash"])
    _create_index("ix_paper_card_analyses_analysis_status", "paper_card_analyses", ["analysis_status"])

    _create_index("ix_taxonomy_entries_type", "taxonomy_entries", ["type"])
    _create_index("ix_taxonomy_entries_name", "taxonomy_entries", ["name"], unique=True)
    _create_index("ix_taxonomy_entries_status", "taxonomy_entries", ["status"])

    _create_index("ix_paper_use_case_mappings_analysis_id", "paper_use_case_mappings", ["analysis_id"])
    _create_index(
        "ix_paper_use_case_mappings_taxonomy_entry_id", "paper_use_case_mappings", ["taxonomy_entry_id"]
    )

    _create_index("ix_paper_analyses_v3_paper_id", "paper_analyses_v3", ["paper_id"])
    _create_index("ix_paper_analyses_v3_practical_value_total", "paper_analyses_v3", ["practical_value_total"])
    _create_index("ix_paper_analyses_v3_analysis_status", "paper_analyses_v3", ["analysis_status"])

    _create_index("ix_analysis_batches_status", "analysis_batches", ["status"])

    _create_index("ix_analysis_batch_jobs_batch_id", "analysis_batch_jobs", ["batch_id"])
    _create_index("ix_analysis_batch_jobs_paper_id", "analysis_batch_jobs", ["paper_id"])
    _create_index("ix_analysis_batch_jobs_status", "analysis_batch_jobs", ["status"])
    _create_index("ix_analysis_batch_jobs_completed_at", "analysis_batch_jobs", ["completed_at"])


def downgrade() -> None:
    op.drop_table("analysis_batch_jobs")
    op.drop_table("analysis_batches")
    op.drop_table("paper_analyses_v3")
    op.drop_table("paper_use_case_mappings")
    op.drop_table("taxonomy_entries")
    op.drop_table("paper_card_analyses")

"""paper ingestion tables

Revision ID: 0001_paper_ingestion_tables
Revises:
Create Date: 2026-09-28

Adds:
- papers: ingested arXiv metadata plus the AI summary fields
- ingestion_runs: per (date, category) ledger for date-based ingestion
- social_mentions / news_mentions: mention monitoring results
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import context, op

revision = "0001_paper_ingestion_tables"
down_revision = None
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
    if _is_offline() or not _has_table("papers"):
        op.create_table(
            "papers",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            # Identity
            sa.Column("source", sa.String(length=32), server_default="arxiv", nullable=False),
            sa.Column("external_id", sa.String(length=64), nullable=False),
            # Core metadata
            sa.Column("title", sa.Text(), server_default="", nullable=False),
            sa.Column("abstract", sa.Text(), server_default="", nullable=False),
            sa.Column("authors_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("categories_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("primary_category", sa.String(length=32), server_default="", nullable=False),
            sa.Column("pdf_url", sa.String(length=512), nullable=True),
            sa.Column("doi", sa.String(length=128), nullable=True),
            # Timestamps
            sa.Column("published_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("fetched_at", sa.DateTime(timezone=True), nullable=True),
            # AI summary
            sa.Column("summary_bullets_json", sa.Text(), server_default="[]", nullable=False),
            sa.Column("summary_eli5", sa.Text(), nullable=True),
            sa.Column("summary_model", sa.String(length=128), nullable=True),
            sa.Column("summary_generated_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("source", "external_id", name="uq_papers_source_external"),
        )

    if _is_offline() or not _has_table("ingestion_runs"):
        op.create_table(
            "ingestion_runs",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("run_date", sa.String(length=10), nullable=False),
            sa.Column("category", sa.String(length=32), nullable=False),
            sa.Column("status", sa.String(length=16), server_default="running", nullable=False),
            sa.Column("expected_total", sa.Integer(), server_default="0", nullable=False),
            sa.Column("fetched", sa.Integer(), server_default="0", nullable=False),
            sa.Column("inserted", sa.Integer(), server_default="0", nullable=False),
            sa.Column("cursor", sa.Integer(), server_default="0", nullable=False),
            sa.Column("error", sa.Text(), nullable=True),
            sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("run_date", "category", name="uq_ingestion_run_date_cat"),
        )

    if _is_offline() or not _has_table("social_mentions"):
        op.create_table(
            "social_mentions",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("paper_id", sa.Integer(), sa.ForeignKey("papers.id"), nullable=False),
            sa.Column("platform", sa.String(length=16), nullable=False),
            sa.Column("external_id", sa.String(length=256), nullable=False),
            sa.Column("author_handle", sa.String(length=256), server_default="", nullable=False),
            sa.Column("author_name", sa.String(length=256), server_default="", nullable=False),
            sa.Column("content", sa.Text(), server_default="", nullable=False),
            sa.Column("url", sa.String(length=512), server_default="", nullable=False),
            sa.Column("likes", sa.Integer(), server_default="0", nullable=False),
            sa.Column("reposts", sa.Integer(), server_default="0", nullable=False),
            sa.Column("replies", sa.Integer(), server_default="0", nullable=False),
            sa.Column("content_hash", sa.String(length=32), server_default="", nullable=False),
            sa.Column("posted_at", sa.DateTime(timezone=True), nullable=True),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
            sa.UniqueConstraint("platform", "external_id", name="uq_social_mention_platform_ext"),
        )

    if _is_offline() or not _has_table("news_mentions"):
        op.create_table(
            "news_mentions",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("paper_id", sa.Integer(), sa.ForeignKey("papers.id"), nullable=False),
            sa.Column("title", sa.Text(), server_default="", nullable=False),
            sa.Column("snippet", sa.Text(), server_default="", nullable=False),
            sa.Column("url", sa.String(length=1024), server_default="", nullable=False),
            sa.Column("source_name", sa.String(length=256), server_default="", nullable=False),
            sa.Column("published", sa.String(length=64), nullable=True),
            sa.Column("url_hash", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(timezone=True), nullable=True),
        )


def _upgrade_create_indexes() -> None:
    _create_index("ix_papers_source", "papers", ["source"])
    _create_index("ix_papers_external_id", "papers", ["external_id"])
    _create_index("ix_papers_primary_category", "papers", ["primary_category"])
    _create_index("ix_papers_published_at", "papers", ["published_at"])
    _create_index("ix_papers_fetched_at", "papers", ["fetched_at"])

    _create_index("ix_ingestion_runs_run_date", "ingestion_runs", ["run_date"])
    _create_index("ix_ingestion_runs_status", "ingestion_runs", ["status"])

    _create_index("ix_social_mentions_paper_id", "social_mentions", ["paper_id"])
    _create_index("ix_social_mentions_platform", "social_mentions", ["platform"])

    _create_index("ix_news_mentions_paper_id", "news_mentions", ["paper_id"])
    _create_index("ix_news_mentions_url_hash", "news_mentions", ["url_hash"], unique=True)


def downgrade() -> None:
    op.drop_table("news_mentions")
    op.drop_table("social_mentions")
    op.drop_table("ingestion_runs")
    op.drop_table("papers")

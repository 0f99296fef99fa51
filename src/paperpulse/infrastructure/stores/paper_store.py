from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import desc, exists, func, select
from sqlalchemy.exc import IntegrityError

from paperpulse.domain.paper import PaperRecord, PaperSource
from paperpulse.infrastructure.stores.models import (
    Base,
    PaperAnalysisV3Model,
    PaperCardAnalysisModel,
    PaperModel,
)
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = _as_utc(value)
    return value.isoformat() if value else None


def paper_to_dict(row: PaperModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "source": row.source,
        "external_id": row.external_id,
        "title": row.title or "",
        "abstract": row.abstract or "",
        "authors": row.get_authors(),
        "categories": row.get_categories(),
        "primary_category": row.primary_category or "",
        "pdf_url": row.pdf_url,
        "doi": row.doi,
        "published_at": _iso(row.published_at),
        "updated_at": _iso(row.updated_at),
        "fetched_at": _iso(row.fetched_at),
        "summary_bullets": row.get_summary_bullets(),
        "summary_eli5": row.summary_eli5,
        "summary_model": row.summary_model,
        "summary_generated_at": _iso(row.summary_generated_at),
    }


class PaperStore:
    """
    Paper repository.

    Papers are immutable after insert apart from the summary fields; a second
    insert of the same (source, external_id) is a no-op.
    """

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def existing_external_ids(
        self, external_ids: Iterable[str], *, source: str = PaperSource.ARXIV.value
    ) -> Set[str]:
        ids = sorted({i for i in external_ids if i})
        if not ids:
            return set()
        found: Set[str] = set()
        with self._provider.session() as session:
            # Chunked to stay under SQLite's bound-parameter limit
            for start in range(0, len(ids), 500):
                chunk = ids[start : start + 500]
                rows = session.execute(
                    select(PaperModel.external_id).where(
                        PaperModel.source == source, PaperModel.external_id.in_(chunk)
                    )
                ).scalars()
                found.update(rows)
        return found

    def insert_paper(self, record: PaperRecord, *, fetched_at: Optional[datetime] = None) -> Optional[int]:
        """Insert a new paper. Returns its id, or None if it already exists."""
        source = record.source.value if isinstance(record.source, PaperSource) else str(record.source)
        row = PaperModel(
            source=source,
            external_id=record.external_id,
            title=record.title,
            abstract=record.abstract or "",
            primary_category=record.primary_category or "",
            pdf_url=record.pdf_url,
            doi=record.doi,
            published_at=_as_utc(record.published_at),
            updated_at=_as_utc(record.updated_at),
            fetched_at=_as_utc(fetched_at) or _utcnow(),
        )
        row.set_authors([{"name": a.name, "affiliation": a.affiliation} for a in record.authors])
        row.set_categories(list(record.categories))

        with self._provider.session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return int(row.id)

    def get_paper(self, paper_id: int) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.get(PaperModel, int(paper_id))
            return paper_to_dict(row) if row else None

    def get_by_external_id(
        self, external_id: str, *, source: str = PaperSource.ARXIV.value
    ) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.execute(
                select(PaperModel).where(
                    PaperModel.source == source, PaperModel.external_id == external_id
                )
            ).scalar_one_or_none()
            return paper_to_dict(row) if row else None

    def count_papers(self) -> int:
        with self._provider.session() as session:
            return int(session.execute(select(func.count(PaperModel.id))).scalar_one())

    def update_summary(self, paper_id: int, *, bullets: List[str], eli5: str, model: str) -> bool:
        with self._provider.session() as session:
            row = session.get(PaperModel, int(paper_id))
            if row is None:
                return False
            row.set_summary_bullets(bullets)
            row.summary_eli5 = eli5
            row.summary_model = model
            row.summary_generated_at = _utcnow()
            session.commit()
            return True

    def count_by_published_day(self, start: date, end: date) -> Dict[str, int]:
        """Papers per UTC publication day in [start, end], keyed YYYY-MM-DD."""
        lower = datetime.combine(start, time.min, tzinfo=timezone.utc)
        upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
        counts: Dict[str, int] = {}
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperModel.published_at).where(
                    PaperModel.published_at >= lower, PaperModel.published_at < upper
                )
            ).scalars()
            for published in rows:
                day = _as_utc(published).date().isoformat()
                counts[day] = counts.get(day, 0) + 1
        return counts

    def list_recently_fetched(self, *, days: int = 7, limit: int = 100) -> List[Dict[str, Any]]:
        since = _utcnow() - timedelta(days=days)
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperModel)
                .where(PaperModel.fetched_at >= since)
                .order_by(desc(PaperModel.fetched_at), desc(PaperModel.id))
                .limit(limit)
            ).scalars()
            return [paper_to_dict(r) for r in rows]

    def list_without_v3_analysis(self, *, limit: int, version: str = "v3") -> List[Dict[str, Any]]:
        """Papers lacking a v3 analysis, newest publication first."""
        analysed = exists().where(
            PaperAnalysisV3Model.paper_id == PaperModel.id,
            PaperAnalysisV3Model.analysis_version == version,
        )
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperModel)
                .where(~analysed)
                .order_by(desc(PaperModel.published_at), desc(PaperModel.id))
                .limit(limit)
            ).scalars()
            return [paper_to_dict(r) for r in rows]

    def count_without_v3_analysis(self, *, version: str = "v3") -> int:
        analysed = exists().where(
            PaperAnalysisV3Model.paper_id == PaperModel.id,
            PaperAnalysisV3Model.analysis_version == version,
        )
        with self._provider.session() as session:
            return int(
                session.execute(select(func.count(PaperModel.id)).where(~analysed)).scalar_one()
            )

    def list_without_card_analysis(self, *, limit: int, version: str = "dtlp_v1") -> List[Dict[str, Any]]:
        """Papers lacking a card analysis, most recently fetched first."""
        analysed = exists().where(
            PaperCardAnalysisModel.paper_id == PaperModel.id,
            PaperCardAnalysisModel.analysis_version == version,
        )
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperModel)
                .where(~analysed)
                .order_by(desc(PaperModel.fetched_at), desc(PaperModel.id))
                .limit(limit)
            ).scalars()
            return [paper_to_dict(r) for r in rows]

    def list_without_summary(self, *, limit: int) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperModel)
                .where(PaperModel.summary_generated_at.is_(None))
                .order_by(desc(PaperModel.fetched_at), desc(PaperModel.id))
                .limit(limit)
            ).scalars()
            return [paper_to_dict(r) for r in rows]

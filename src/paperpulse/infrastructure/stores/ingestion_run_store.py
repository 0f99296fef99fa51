from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from paperpulse.infrastructure.stores.models import Base, IngestionRunModel
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _run_to_dict(row: IngestionRunModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "run_date": row.run_date,
        "category": row.category,
        "status": row.status,
        "expected_total": int(row.expected_total or 0),
        "fetched": int(row.fetched or 0),
        "inserted": int(row.inserted or 0),
        "cursor": int(row.cursor or 0),
        "error": row.error,
    }


class IngestionRunStore:
    """Ledger of date-based ingestion, one row per (date, category)."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def get_run(self, run_date: str, category: str) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = self._find(session, run_date, category)
            return _run_to_dict(row) if row else None

    def start_run(self, run_date: str, category: str) -> Dict[str, Any]:
        """Open (or reopen) the ledger row; an existing cursor is kept for resume."""
        with self._provider.session() as session:
            row = self._find(session, run_date, category)
            if row is None:
                row = IngestionRunModel(run_date=run_date, category=category, cursor=0)
                session.add(row)
            row.status = RUN_RUNNING
            row.error = None
            row.started_at = _utcnow()
            row.finished_at = None
            session.commit()
            return _run_to_dict(row)

    def record_progress(
        self,
        run_date: str,
        category: str,
        *,
        expected_total: int,
        fetched: int,
        inserted: int,
        cursor: int,
    ) -> None:
        with self._provider.session() as session:
            row = self._find(session, run_date, category)
            if row is None:
                return
            row.expected_total = int(expected_total)
            row.fetched = int(fetched)
            row.inserted = int(row.inserted or 0) + int(inserted)
            row.cursor = int(cursor)
            session.commit()

    def finish_run(self, run_date: str, category: str, *, error: Optional[str] = None) -> None:
        with self._provider.session() as session:
            row = self._find(session, run_date, category)
            if row is None:
                return
            row.status = RUN_FAILED if error else RUN_COMPLETED
            row.error = error
            row.finished_at = _utcnow()
            session.commit()

    def list_runs(self, run_date: str) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(IngestionRunModel)
                .where(IngestionRunModel.run_date == run_date)
                .order_by(IngestionRunModel.category)
            ).scalars()
            return [_run_to_dict(r) for r in rows]

    @staticmethod
    def _find(session, run_date: str, category: str) -> Optional[IngestionRunModel]:
        return session.execute(
            select(IngestionRunModel).where(
                IngestionRunModel.run_date == run_date, IngestionRunModel.category == category
            )
        ).scalar_one_or_none()

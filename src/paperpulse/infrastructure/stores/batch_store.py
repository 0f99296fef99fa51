from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import desc, func, select, update

from paperpulse.domain.batch import (
    OPEN_BATCH_STATUSES,
    OPEN_JOB_STATUSES,
    BatchJobStatus,
    BatchStatus,
)
from paperpulse.infrastructure.stores.models import AnalysisBatchJobModel, AnalysisBatchModel, Base
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url

CANCELLED_MESSAGE = "Batch cancelled"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def _batch_to_dict(row: AnalysisBatchModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "batch_size": int(row.batch_size),
        "completed": int(row.completed),
        "failed": int(row.failed),
        "status": row.status,
        "model": row.model,
        "scope": row.scope,
        "total_tokens": int(row.total_tokens or 0),
        "total_cost_cents": int(row.total_cost_cents or 0),
        "started_at": _iso(row.started_at),
        "finished_at": _iso(row.finished_at),
    }


def _job_to_dict(row: AnalysisBatchJobModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "batch_id": int(row.batch_id) if row.batch_id is not None else None,
        "paper_id": int(row.paper_id),
        "status": row.status,
        "queue_job_id": row.queue_job_id,
        "error": row.error,
        "tokens_used": int(row.tokens_used or 0),
        "cost_cents": int(row.cost_cents or 0),
        "processing_time_ms": int(row.processing_time_ms or 0),
        "started_at": _iso(row.started_at),
        "completed_at": _iso(row.completed_at),
    }


class BatchStore:
    """
    Analysis batches and their per-paper jobs.

    Counter updates are single UPDATE statements (``completed = completed + 1``)
    and the completion transition is a conditional UPDATE whose row count tells
    the caller whether it was the one that closed the batch.
    """

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def create_batch(self, *, paper_ids: Iterable[int], model: str, scope: str = "newest") -> Dict[str, Any]:
        ids = list(dict.fromkeys(int(p) for p in paper_ids))
        now = _utcnow()
        with self._provider.session() as session:
            batch = AnalysisBatchModel(
                batch_size=len(ids),
                completed=0,
                failed=0,
                status=BatchStatus.RUNNING.value,
                model=model,
                scope=scope,
                started_at=now,
            )
            session.add(batch)
            session.flush()
            session.add_all(
                AnalysisBatchJobModel(
                    batch_id=batch.id, paper_id=pid, status=BatchJobStatus.PENDING.value
                )
                for pid in ids
            )
            session.commit()
            return _batch_to_dict(batch)

    def get_batch(self, batch_id: int) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.get(AnalysisBatchModel, int(batch_id))
            return _batch_to_dict(row) if row else None

    def get_open_batch(self, statuses: Iterable[str] = OPEN_BATCH_STATUSES) -> Optional[Dict[str, Any]]:
        """Oldest running batch, else oldest paused one."""
        wanted = list(statuses)
        with self._provider.session() as session:
            rows = session.execute(
                select(AnalysisBatchModel)
                .where(AnalysisBatchModel.status.in_(wanted))
                .order_by(AnalysisBatchModel.id)
            ).scalars().all()
            for status in wanted:
                for row in rows:
                    if row.status == status:
                        return _batch_to_dict(row)
            return None

    def list_batches(self, *, limit: int = 20) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(AnalysisBatchModel).order_by(desc(AnalysisBatchModel.id)).limit(limit)
            ).scalars()
            return [_batch_to_dict(r) for r in rows]

    def set_batch_status(self, batch_id: int, status: str, *, from_statuses: Iterable[str]) -> bool:
        values: Dict[str, Any] = {"status": status}
        if status in (BatchStatus.COMPLETED.value, BatchStatus.CANCELLED.value):
            values["finished_at"] = _utcnow()
        with self._provider.session() as session:
            result = session.execute(
                update(AnalysisBatchModel)
                .where(
                    AnalysisBatchModel.id == int(batch_id),
                    AnalysisBatchModel.status.in_(list(from_statuses)),
                )
                .values(**values)
            )
            session.commit()
            return result.rowcount == 1

    def cancel_batch(self, batch_id: int) -> int:
        """Fail every pending job and mark the batch cancelled. Returns jobs failed."""
        now = _utcnow()
        with self._provider.session() as session:
            result = session.execute(
                update(AnalysisBatchJobModel)
                .where(
                    AnalysisBatchJobModel.batch_id == int(batch_id),
                    AnalysisBatchJobModel.status == BatchJobStatus.PENDING.value,
                )
                .values(status=BatchJobStatus.FAILED.value, error=CANCELLED_MESSAGE, completed_at=now)
            )
            cancelled = int(result.rowcount or 0)
            session.execute(
                update(AnalysisBatchModel)
                .where(AnalysisBatchModel.id == int(batch_id))
                .values(
                    status=BatchStatus.CANCELLED.value,
                    failed=AnalysisBatchModel.failed + cancelled,
                    finished_at=now,
                )
            )
            session.commit()
            return cancelled

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def get_job(self, job_id: int) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.get(AnalysisBatchJobModel, int(job_id))
            return _job_to_dict(row) if row else None

    def list_jobs(self, batch_id: int, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(AnalysisBatchJobModel).where(AnalysisBatchJobModel.batch_id == int(batch_id))
        if status:
            stmt = stmt.where(AnalysisBatchJobModel.status == status)
        with self._provider.session() as session:
            rows = session.execute(stmt.order_by(AnalysisBatchJobModel.id)).scalars()
            return [_job_to_dict(r) for r in rows]

    def attach_queue_job(self, job_id: int, queue_job_id: str) -> None:
        with self._provider.session() as session:
            session.execute(
                update(AnalysisBatchJobModel)
                .where(AnalysisBatchJobModel.id == int(job_id))
                .values(queue_job_id=queue_job_id)
            )
            session.commit()

    def mark_job_running(self, job_id: int) -> bool:
        with self._provider.session() as session:
            result = session.execute(
                update(AnalysisBatchJobModel)
                .where(
                    AnalysisBatchJobModel.id == int(job_id),
                    AnalysisBatchJobModel.status == BatchJobStatus.PENDING.value,
                )
                .values(status=BatchJobStatus.RUNNING.value, started_at=_utcnow())
            )
            session.commit()
            return result.rowcount == 1

    def record_job_completed(
        self, job_id: int, *, tokens_used: int, cost_cents: int, processing_time_ms: int
    ) -> bool:
        """Count a success. Returns True if this event closed the batch."""
        return self._record_terminal(
            job_id,
            status=BatchJobStatus.COMPLETED.value,
            job_values={
                "tokens_used": int(tokens_used),
                "cost_cents": int(cost_cents),
                "processing_time_ms": int(processing_time_ms),
                "error": None,
            },
            batch_values={
                "completed": AnalysisBatchModel.completed + 1,
                "total_tokens": AnalysisBatchModel.total_tokens + int(tokens_used),
                "total_cost_cents": AnalysisBatchModel.total_cost_cents + int(cost_cents),
            },
        )

    def record_job_failed(self, job_id: int, *, error: str, processing_time_ms: int = 0) -> bool:
        """Count a failure. Returns True if this event closed the batch."""
        return self._record_terminal(
            job_id,
            status=BatchJobStatus.FAILED.value,
            job_values={"error": (error or "")[:2000], "processing_time_ms": int(processing_time_ms)},
            batch_values={"failed": AnalysisBatchModel.failed + 1},
        )

    def _record_terminal(
        self,
        job_id: int,
        *,
        status: str,
        job_values: Dict[str, Any],
        batch_values: Dict[str, Any],
    ) -> bool:
        now = _utcnow()
        with self._provider.session() as session:
            # Only the first terminal event for a job counts
            moved = session.execute(
                update(AnalysisBatchJobModel)
                .where(
                    AnalysisBatchJobModel.id == int(job_id),
                    AnalysisBatchJobModel.status.in_(list(OPEN_JOB_STATUSES)),
                )
                .values(status=status, completed_at=now, **job_values)
            )
            if moved.rowcount != 1:
                session.rollback()
                return False

            batch_id = session.execute(
                select(AnalysisBatchJobModel.batch_id).where(AnalysisBatchJobModel.id == int(job_id))
            ).scalar_one()
            session.execute(
                update(AnalysisBatchModel)
                .where(AnalysisBatchModel.id == batch_id)
                .values(**batch_values)
            )
            closed = session.execute(
                update(AnalysisBatchModel)
                .where(
                    AnalysisBatchModel.id == batch_id,
                    AnalysisBatchModel.status.in_(list(OPEN_BATCH_STATUSES)),
                    AnalysisBatchModel.completed + AnalysisBatchModel.failed
                    >= AnalysisBatchModel.batch_size,
                )
                .values(status=BatchStatus.COMPLETED.value, finished_at=now)
            )
            session.commit()
            return closed.rowcount == 1

    def reset_failed_jobs(self, *, batch_id: Optional[int] = None, job_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Move failed jobs back to pending and reopen their batch.

        The batch's failed counter is decremented by the number of jobs reset
        so completed + failed keeps matching the jobs actually finished.
        """
        if batch_id is None and job_id is None:
            raise ValueError("batch_id or job_id is required")
        stmt = select(AnalysisBatchJobModel).where(
            AnalysisBatchJobModel.status == BatchJobStatus.FAILED.value
        )
        if job_id is not None:
            stmt = stmt.where(AnalysisBatchJobModel.id == int(job_id))
        else:
            stmt = stmt.where(AnalysisBatchJobModel.batch_id == int(batch_id))

        with self._provider.session() as session:
            rows = session.execute(stmt).scalars().all()
            if not rows:
                return []
            per_batch: Dict[int, int] = {}
            for row in rows:
                row.status = BatchJobStatus.PENDING.value
                row.error = None
                row.completed_at = None
                per_batch[int(row.batch_id)] = per_batch.get(int(row.batch_id), 0) + 1
            for bid, count in per_batch.items():
                session.execute(
                    update(AnalysisBatchModel)
                    .where(AnalysisBatchModel.id == bid)
                    .values(
                        failed=AnalysisBatchModel.failed - count,
                        status=BatchStatus.RUNNING.value,
                        finished_at=None,
                    )
                )
            session.commit()
            return [_job_to_dict(r) for r in rows]

    def record_standalone_job(
        self, paper_id: int, *, tokens_used: int, cost_cents: int, processing_time_ms: int
    ) -> Dict[str, Any]:
        """A completed job outside any batch (one-off test runs); counts toward spend."""
        now = _utcnow()
        row = AnalysisBatchJobModel(
            batch_id=None,
            paper_id=int(paper_id),
            status=BatchJobStatus.COMPLETED.value,
            tokens_used=int(tokens_used),
            cost_cents=int(cost_cents),
            processing_time_ms=int(processing_time_ms),
            started_at=now,
            completed_at=now,
        )
        with self._provider.session() as session:
            session.add(row)
            session.commit()
            return _job_to_dict(row)

    def list_recent_activity(self, *, limit: int = 20) -> List[Dict[str, Any]]:
        """Most recently finished jobs, newest first."""
        terminal = [BatchJobStatus.COMPLETED.value, BatchJobStatus.FAILED.value]
        with self._provider.session() as session:
            rows = session.execute(
                select(AnalysisBatchJobModel)
                .where(AnalysisBatchJobModel.status.in_(terminal))
                .order_by(desc(AnalysisBatchJobModel.completed_at), desc(AnalysisBatchJobModel.id))
                .limit(limit)
            ).scalars()
            return [_job_to_dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Spend and throughput
    # ------------------------------------------------------------------

    def spent_cents_since(self, since: Optional[datetime] = None) -> int:
        """Sum of cost over completed jobs finished at or after ``since`` (all time if None)."""
        stmt = select(func.coalesce(func.sum(AnalysisBatchJobModel.cost_cents), 0)).where(
            AnalysisBatchJobModel.status == BatchJobStatus.COMPLETED.value
        )
        if since is not None:
            stmt = stmt.where(AnalysisBatchJobModel.completed_at >= since.astimezone(timezone.utc))
        with self._provider.session() as session:
            return int(session.execute(stmt).scalar_one() or 0)

    def completed_job_averages(self) -> Dict[str, float]:
        with self._provider.session() as session:
            row = session.execute(
                select(
                    func.avg(AnalysisBatchJobModel.cost_cents),
                    func.avg(AnalysisBatchJobModel.tokens_used),
                    func.avg(AnalysisBatchJobModel.processing_time_ms),
                    func.count(AnalysisBatchJobModel.id),
                ).where(AnalysisBatchJobModel.status == BatchJobStatus.COMPLETED.value)
            ).one()
        avg_cost, avg_tokens, avg_ms, total = row
        return {
            "avg_cost_cents": float(avg_cost or 0.0),
            "avg_tokens": float(avg_tokens or 0.0),
            "avg_time_ms": float(avg_ms or 0.0),
            "total_completed": int(total or 0),
        }

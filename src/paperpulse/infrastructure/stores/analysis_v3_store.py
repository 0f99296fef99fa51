from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from paperpulse.domain.analysis_v3 import ANALYSIS_VERSION, V3AnalysisRun
from paperpulse.infrastructure.stores.models import Base, PaperAnalysisV3Model
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _row_to_dict(row: PaperAnalysisV3Model) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "paper_id": int(row.paper_id),
        "analysis_version": row.analysis_version,
        "hook_sentence": row.hook_sentence,
        "what_kind": row.what_kind,
        "time_to_value": row.time_to_value,
        "impact_area_tags": json.loads(row.impact_area_tags_json or "[]"),
        "practical_value_score": {
            "real_problem": int(row.real_problem),
            "concrete_result": int(row.concrete_result),
            "actually_usable": int(row.actually_usable),
            "total": int(row.practical_value_total),
        },
        "key_numbers": json.loads(row.key_numbers_json or "[]"),
        "readiness_level": row.readiness_level,
        "how_this_changes_things": json.loads(row.how_this_changes_things_json or "[]"),
        "what_came_before": row.what_came_before,
        "analysis_status": row.analysis_status,
        "validation_errors": json.loads(row.validation_errors_json or "[]"),
        "analysis_model": row.analysis_model,
        "tokens_used": int(row.tokens_used or 0),
        "prompt_hash": row.prompt_hash,
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class AnalysisV3Store:
    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    def get_analysis(self, paper_id: int, version: str = ANALYSIS_VERSION) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.execute(
                select(PaperAnalysisV3Model).where(
                    PaperAnalysisV3Model.paper_id == int(paper_id),
                    PaperAnalysisV3Model.analysis_version == version,
                )
            ).scalar_one_or_none()
            return _row_to_dict(row) if row else None

    def delete_analysis(self, paper_id: int, version: str = ANALYSIS_VERSION) -> bool:
        with self._provider.session() as session:
            result = session.execute(
                delete(PaperAnalysisV3Model).where(
                    PaperAnalysisV3Model.paper_id == int(paper_id),
                    PaperAnalysisV3Model.analysis_version == version,
                )
            )
            session.commit()
            return bool(result.rowcount)

    def save_analysis(self, paper_id: int, run: V3AnalysisRun) -> Optional[int]:
        """Insert one v3 row; None when (paper, version) already has one."""
        analysis = run.outcome.analysis
        score = analysis.practical_value
        row = PaperAnalysisV3Model(
            paper_id=int(paper_id),
            analysis_version=ANALYSIS_VERSION,
            hook_sentence=analysis.hook_sentence,
            what_kind=analysis.what_kind,
            time_to_value=analysis.time_to_value,
            impact_area_tags_json=_dump(list(analysis.impact_area_tags)),
            real_problem=score.real_problem,
            concrete_result=score.concrete_result,
            actually_usable=score.actually_usable,
            practical_value_total=score.total,
            key_numbers_json=_dump([kn.to_dict() for kn in analysis.key_numbers]),
            readiness_level=analysis.readiness_level,
            how_this_changes_things_json=_dump(list(analysis.how_this_changes_things)),
            what_came_before=analysis.what_came_before,
            analysis_status=run.status,
            validation_errors_json=_dump(run.validation_errors),
            analysis_model=run.model,
            tokens_used=int(run.tokens_used or 0),
            prompt_hash=run.prompt_hash,
            created_at=_utcnow(),
        )
        with self._provider.session() as session:
            session.add(row)
            try:
                session.commit()
            except IntegrityError:
                session.rollback()
                return None
            return int(row.id)

    def count_analysed(self, *, status: Optional[str] = None, version: str = ANALYSIS_VERSION) -> int:
        stmt = select(func.count(PaperAnalysisV3Model.id)).where(
            PaperAnalysisV3Model.analysis_version == version
        )
        if status:
            stmt = stmt.where(PaperAnalysisV3Model.analysis_status == status)
        with self._provider.session() as session:
            return int(session.execute(stmt).scalar_one())

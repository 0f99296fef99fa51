from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from paperpulse.domain.card_analysis import ANALYSIS_VERSION, CardAnalysisResult, TaxonomyProposal
from paperpulse.infrastructure.stores.models import (
    Base,
    PaperCardAnalysisModel,
    PaperUseCaseMappingModel,
    TaxonomyEntryModel,
)
from paperpulse.infrastructure.stores.sqlalchemy_db import SessionProvider, get_db_url

TAXONOMY_STATUSES = ("active", "provisional", "deprecated")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _taxonomy_to_dict(row: TaxonomyEntryModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "type": row.type,
        "name": row.name,
        "definition": row.definition or "",
        "synonyms": row.get_synonyms(),
        "status": row.status,
        "usage_count": int(row.usage_count or 0),
        "version": int(row.version or 1),
    }


def _analysis_to_dict(row: PaperCardAnalysisModel) -> Dict[str, Any]:
    return {
        "id": int(row.id),
        "paper_id": int(row.paper_id),
        "analysis_version": row.analysis_version,
        "role": row.role,
        "role_confidence": float(row.role_confidence or 0.0),
        "time_to_value": row.time_to_value,
        "time_to_value_confidence": float(row.time_to_value_confidence or 0.0),
        "interest_score": int(row.interest_score or 0),
        "interest_tier": row.interest_tier,
        "readiness_level": row.readiness_level,
        "public_views": row.get_public_views(),
        "prompt_hash": row.prompt_hash,
        "analysis_status": row.analysis_status,
        "validation_errors": row.get_validation_errors(),
        "validation_warnings": row.get_validation_warnings(),
        "analysis_model": row.analysis_model,
        "tokens_used": int(row.tokens_used or 0),
        "created_at": row.created_at.isoformat() if row.created_at else None,
    }


class CardAnalysisStore:
    """DTL-P analyses, the use-case taxonomy, and the mappings between them."""

    def __init__(self, db_url: Optional[str] = None, *, auto_create_schema: bool = True):
        self.db_url = db_url or get_db_url()
        self._provider = SessionProvider(self.db_url)
        if auto_create_schema:
            Base.metadata.create_all(self._provider.engine)

    # ------------------------------------------------------------------
    # Analyses
    # ------------------------------------------------------------------

    def get_analysis(self, paper_id: int, version: str = ANALYSIS_VERSION) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.execute(
                select(PaperCardAnalysisModel).where(
                    PaperCardAnalysisModel.paper_id == int(paper_id),
                    PaperCardAnalysisModel.analysis_version == version,
                )
            ).scalar_one_or_none()
            return _analysis_to_dict(row) if row else None

    def delete_analysis(self, paper_id: int, version: str = ANALYSIS_VERSION) -> bool:
        with self._provider.session() as session:
            row = session.execute(
                select(PaperCardAnalysisModel).where(
                    PaperCardAnalysisModel.paper_id == int(paper_id),
                    PaperCardAnalysisModel.analysis_version == version,
                )
            ).scalar_one_or_none()
            if row is None:
                return False
            # ORM delete so mappings cascade on backends without FK enforcement
            session.delete(row)
            session.commit()
            return True

    def save_analysis(self, paper_id: int, result: CardAnalysisResult) -> Optional[int]:
        """
        Insert one analysis row. Returns None when a row for this
        (paper, version) already exists.
        """
        a = result.analysis
        row = PaperCardAnalysisModel(
            paper_id=int(paper_id),
            analysis_version=ANALYSIS_VERSION,
            role=a.role,
            role_confidence=a.role_confidence,
            time_to_value=a.time_to_value,
            time_to_value_confidence=a.time_to_value_confidence,
            interest_score=a.interestingness.total_score,
            interest_tier=a.interestingness.tier,
            interestingness_json=_dump(a.interestingness.model_dump()),
            business_primitives_json=_dump(a.business_primitives.model_dump()),
            key_numbers_json=_dump([kn.model_dump() for kn in a.key_numbers]),
            constraints_json=_dump([c.model_dump() for c in a.constraints]),
            failure_modes_json=_dump([f.model_dump() for f in a.failure_modes]),
            what_is_missing_json=_dump(list(a.what_is_missing)),
            readiness_level=a.readiness_level,
            readiness_justification=a.readiness_justification,
            readiness_evidence_pointers_json=_dump(list(a.readiness_evidence_pointers)),
            public_views_json=_dump(a.public_views.model_dump(by_alias=True)),
            taxonomy_proposals_json=_dump([p.model_dump() for p in a.taxonomy_proposals]),
            prompt_hash=result.prompt_hash,
            analysis_status=result.status,
            validation_errors_json=_dump(list(result.validation_errors)),
            validation_warnings_json=_dump(list(result.validation_warnings)),
            analysis_model=result.model,
            tokens_used=int(result.tokens_used or 0),
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

    def list_mappings(self, analysis_id: int) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(PaperUseCaseMappingModel, TaxonomyEntryModel.name)
                .join(
                    TaxonomyEntryModel,
                    TaxonomyEntryModel.id == PaperUseCaseMappingModel.taxonomy_entry_id,
                )
                .where(PaperUseCaseMappingModel.analysis_id == int(analysis_id))
                .order_by(PaperUseCaseMappingModel.id)
            ).all()
            return [
                {
                    "taxonomy_entry_id": int(mapping.taxonomy_entry_id),
                    "name": name,
                    "fit_confidence": mapping.fit_confidence,
                    "because": mapping.because,
                    "evidence_pointers": json.loads(mapping.evidence_pointers_json or "[]"),
                }
                for mapping, name in rows
            ]

    def add_use_case_mapping(
        self,
        *,
        analysis_id: int,
        taxonomy_entry_id: int,
        fit_confidence: str,
        because: str,
        evidence_pointers: Iterable[str],
    ) -> int:
        """Link an analysis to a taxonomy entry and bump the entry's usage count."""
        with self._provider.session() as session:
            mapping = PaperUseCaseMappingModel(
                analysis_id=int(analysis_id),
                taxonomy_entry_id=int(taxonomy_entry_id),
                fit_confidence=fit_confidence,
                because=because,
                evidence_pointers_json=_dump(list(evidence_pointers)),
            )
            session.add(mapping)
            session.execute(
                update(TaxonomyEntryModel)
                .where(TaxonomyEntryModel.id == int(taxonomy_entry_id))
                .values(usage_count=TaxonomyEntryModel.usage_count + 1)
            )
            session.commit()
            return int(mapping.id)

    # ------------------------------------------------------------------
    # Taxonomy
    # ------------------------------------------------------------------

    def list_taxonomy(self, statuses: Iterable[str] = ("active", "provisional")) -> List[Dict[str, Any]]:
        with self._provider.session() as session:
            rows = session.execute(
                select(TaxonomyEntryModel)
                .where(TaxonomyEntryModel.status.in_(list(statuses)))
                .order_by(TaxonomyEntryModel.status, TaxonomyEntryModel.name)
            ).scalars()
            return [_taxonomy_to_dict(r) for r in rows]

    def find_taxonomy_by_name(self, name: str) -> Optional[Dict[str, Any]]:
        with self._provider.session() as session:
            row = session.execute(
                select(TaxonomyEntryModel).where(TaxonomyEntryModel.name == name)
            ).scalar_one_or_none()
            return _taxonomy_to_dict(row) if row else None

    def add_taxonomy_entry(
        self,
        *,
        name: str,
        definition: str = "",
        status: str = "active",
        inclusions: Iterable[str] = (),
        exclusions: Iterable[str] = (),
        examples: Iterable[str] = (),
        synonyms: Iterable[str] = (),
    ) -> Optional[int]:
        """Insert a taxonomy entry. Returns None if the name is already taken."""
        if status not in TAXONOMY_STATUSES:
            raise ValueError(f"unknown taxonomy status: {status}")
        row = TaxonomyEntryModel(
            type="use_case",
            name=name.strip(),
            definition=definition,
            inclusions_json=_dump(list(inclusions)),
            exclusions_json=_dump(list(exclusions)),
            examples_json=_dump(list(examples)),
            synonyms_json=_dump(list(synonyms)),
            status=status,
            usage_count=0,
            version=1,
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

    def insert_proposal(self, proposal: TaxonomyProposal) -> Optional[int]:
        """LLM proposals always land as provisional; name collisions are ignored."""
        return self.add_taxonomy_entry(
            name=proposal.proposed_name,
            definition=proposal.definition,
            status="provisional",
            inclusions=proposal.inclusions,
            exclusions=proposal.exclusions,
            examples=proposal.examples,
            synonyms=proposal.synonyms,
        )


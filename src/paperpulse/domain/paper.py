"""
Paper records produced by the ingestion side of the pipeline.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

AI_CATEGORIES = ("cs.AI", "cs.LG", "cs.CL", "cs.CV", "cs.NE", "stat.ML")

_VERSION_SUFFIX = re.compile(r"v\d+$")


class PaperSource(str, Enum):
    """External sources papers are ingested from."""

    ARXIV = "arxiv"


def strip_arxiv_version(arxiv_id: str) -> str:
    """'2401.12345v2' -> '2401.12345'."""
    return _VERSION_SUFFIX.sub("", (arxiv_id or "").strip())


@dataclass
class PaperAuthor:
    name: str
    affiliation: Optional[str] = None


@dataclass
class PaperRecord:
    """
    A paper as returned by the external source, before persistence.

    external_id is the version-less arXiv identifier; together with source it
    is the paper's identity.
    """

    external_id: str
    title: str
    abstract: str = ""
    source: PaperSource = PaperSource.ARXIV
    authors: List[PaperAuthor] = field(default_factory=list)
    categories: List[str] = field(default_factory=list)
    primary_category: str = ""
    published_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    pdf_url: Optional[str] = None
    doi: Optional[str] = None

    @property
    def author_names(self) -> List[str]:
        return [a.name for a in self.authors if a.name]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["source"] = self.source.value
        data["published_at"] = self.published_at.isoformat() if self.published_at else None
        data["updated_at"] = self.updated_at.isoformat() if self.updated_at else None
        return data


@dataclass
class FetchResult:
    """One page of results from the paper source."""

    records: List[PaperRecord]
    total_results: int = 0
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CategoryIngestStats:
    fetched: int = 0
    error: Optional[str] = None


@dataclass
class IngestionSummary:
    """Aggregate outcome of an ingestion job across categories."""

    total_fetched: int = 0
    unique_papers: int = 0
    new_papers: int = 0
    duplicates_skipped: int = 0
    existing_skipped: int = 0
    by_category: Dict[str, CategoryIngestStats] = field(default_factory=dict)
    new_paper_ids: List[int] = field(default_factory=list)
    date: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "total_fetched": self.total_fetched,
            "unique_papers": self.unique_papers,
            "new_papers": self.new_papers,
            "duplicates_skipped": self.duplicates_skipped,
            "existing_skipped": self.existing_skipped,
            "by_category": {k: asdict(v) for k, v in self.by_category.items()},
        }

# src/paperpulse/application/ports/paper_source_port.py
"""
Paper source port interface.

Defines what the ingestion workflow needs from an external paper source.
"""

from __future__ import annotations

from datetime import date
from typing import Optional, Protocol, runtime_checkable

from paperpulse.domain.paper import FetchResult, PaperRecord


@runtime_checkable
class PaperSourcePort(Protocol):
    async def fetch_recent(self, category: str, max_results: int = 100) -> FetchResult:
        """Newest submissions in one category."""
        ...

    async def fetch_ai_papers(self, max_results: int = 200) -> FetchResult:
        """Newest submissions across all AI categories in one query."""
        ...

    async def fetch_by_date(
        self, category: str, day: date, *, max_results: int = 200, start: int = 0
    ) -> FetchResult:
        """
        One page of submissions for a single day.

        Args:
            category: arXiv category, e.g. "cs.AI"
            day: submission date
            max_results: page size
            start: offset of the first result

        Returns:
            FetchResult with the page and the feed's total result count
        """
        ...

    async def fetch_by_id(self, arxiv_id: str) -> Optional[PaperRecord]: ...

    async def close(self) -> None:
        """Release resources (HTTP sessions, etc.)."""
        ...

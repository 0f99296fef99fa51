# src/paperpulse/infrastructure/harvesters/arxiv_harvester.py
"""
arXiv paper source.

Uses the arXiv Atom API for category, id and date queries.
API documentation: https://arxiv.org/help/api
"""

from __future__ import annotations

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from datetime import date, datetime
from typing import List, Optional

import aiohttp

from paperpulse.domain.paper import (
    AI_CATEGORIES,
    FetchResult,
    PaperAuthor,
    PaperRecord,
    PaperSource,
    strip_arxiv_version,
)

logger = logging.getLogger(__name__)

ATOM_NS = "{http://www.w3.org/2005/Atom}"
ARXIV_NS = "{http://arxiv.org/schemas/atom}"
OPENSEARCH_NS = "{http://a9.com/-/spec/opensearch/1.1/}"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def parse_feed(xml_text: str) -> FetchResult:
    """Parse an arXiv Atom response into paper records plus the feed total."""
    root = ET.fromstring(xml_text)
    records: List[PaperRecord] = []
    for entry in root.findall(f"{ATOM_NS}entry"):
        entry_id = (entry.findtext(f"{ATOM_NS}id") or "").strip()
        arxiv_id = strip_arxiv_version(entry_id.rsplit("/abs/", 1)[-1])
        if not arxiv_id:
            continue

        authors = []
        for node in entry.findall(f"{ATOM_NS}author"):
            name = (node.findtext(f"{ATOM_NS}name") or "").strip()
            if name:
                affiliation = (node.findtext(f"{ARXIV_NS}affiliation") or "").strip() or None
                authors.append(PaperAuthor(name=name, affiliation=affiliation))

        categories = [
            node.attrib["term"] for node in entry.findall(f"{ATOM_NS}category") if node.attrib.get("term")
        ]
        primary_node = entry.find(f"{ARXIV_NS}primary_category")
        primary = primary_node.attrib.get("term") if primary_node is not None else None

        pdf_url = None
        for link in entry.findall(f"{ATOM_NS}link"):
            if link.attrib.get("title") == "pdf" or link.attrib.get("type") == "application/pdf":
                pdf_url = link.attrib.get("href")
                break

        records.append(
            PaperRecord(
                external_id=arxiv_id,
                title=" ".join((entry.findtext(f"{ATOM_NS}title") or "").split()),
                abstract=" ".join((entry.findtext(f"{ATOM_NS}summary") or "").split()),
                source=PaperSource.ARXIV,
                authors=authors,
                categories=categories,
                primary_category=primary or (categories[0] if categories else ""),
                published_at=_parse_timestamp(entry.findtext(f"{ATOM_NS}published")),
                updated_at=_parse_timestamp(entry.findtext(f"{ATOM_NS}updated")),
                pdf_url=pdf_url or f"https://arxiv.org/pdf/{arxiv_id}.pdf",
                doi=(entry.findtext(f"{ARXIV_NS}doi") or "").strip() or None,
            )
        )

    total_text = (root.findtext(f"{OPENSEARCH_NS}totalResults") or "").strip()
    total = int(total_text) if total_text.isdigit() else len(records)
    return FetchResult(records=records, total_results=total)


class ArxivHarvester:
    """
    arXiv source client using the Atom API.

    API: https://export.arxiv.org/api/query
    Rate limit: 1 request per 3 seconds
    """

    ARXIV_API_URL = "https://export.arxiv.org/api/query"
    REQUEST_INTERVAL = 3.0  # seconds between requests
    TIMEOUT_SECONDS = 30
    USER_AGENT = "ResearchAggregator/1.0"

    def __init__(self, *, request_interval: Optional[float] = None):
        self._session: Optional[aiohttp.ClientSession] = None
        self._last_request_time: float = 0
        self._interval = self.REQUEST_INTERVAL if request_interval is None else request_interval
        self._lock = asyncio.Lock()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.TIMEOUT_SECONDS),
                headers={"User-Agent": self.USER_AGENT},
            )
        return self._session

    async def _rate_limit(self) -> None:
        """Enforce rate limiting between requests."""
        elapsed = time.monotonic() - self._last_request_time
        if elapsed < self._interval:
            await asyncio.sleep(self._interval - elapsed)
        self._last_request_time = time.monotonic()

    async def _query(self, params: dict) -> FetchResult:
        try:
            async with self._lock:
                await self._rate_limit()
                session = await self._get_session()
                async with session.get(self.ARXIV_API_URL, params=params) as resp:
                    if resp.status != 200:
                        return FetchResult(records=[], error=f"arXiv API returned status {resp.status}")
                    xml_text = await resp.text()
            return parse_feed(xml_text)
        except (aiohttp.ClientError, asyncio.TimeoutError, ET.ParseError) as e:
            logger.warning("arXiv request failed (%s): %s", params.get("search_query") or params.get("id_list"), e)
            return FetchResult(records=[], error=str(e) or type(e).__name__)

    async def fetch_recent(self, category: str, max_results: int = 100) -> FetchResult:
        return await self._query(
            {
                "search_query": f"cat:{category}",
                "start": 0,
                "max_results": max_results,
                "sortBy": "submittedDate",
                "sortOrder": "descending",
            }
        )

    async def fetch_ai_papers(self, max_results: int = 200) -> FetchResult:
        query = " OR ".join(f"cat:{c}" for c in AI_CATEGORIES)
        return await self._query(
            {
                "search_query": query,
                "start": 0,
                "max_results": max_results,
                "sortBy": "submittedDate",
                "sortOrder": "descending",
            }
        )

    async def fetch_by_id(self, arxiv_id: str) -> Optional[PaperRecord]:
        result = await self._query({"id_list": strip_arxiv_version(arxiv_id), "max_results": 1})
        return result.records[0] if result.records else None

    async def fetch_by_date(
        self, category: str, day: date, *, max_results: int = 200, start: int = 0
    ) -> FetchResult:
        """
        One page of papers submitted on ``day``. Sorted oldest first so a
        stored cursor stays valid when late submissions are appended.
        """
        stamp = day.strftime("%Y%m%d")
        return await self._query(
            {
                "search_query": f"cat:{category} AND submittedDate:[{stamp}0000 TO {stamp}2359]",
                "start": start,
                "max_results": max_results,
                "sortBy": "submittedDate",
                "sortOrder": "ascending",
            }
        )

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

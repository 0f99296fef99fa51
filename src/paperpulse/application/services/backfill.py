"""
Gap detection and backfill planning.

Both are pure: they turn dates and per-day counts into the list of dates
that need a date-based ingestion job. Enqueueing happens in the ingestion
workflow.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from paperpulse.domain.errors import BackfillRequestError
from paperpulse.domain.paper import AI_CATEGORIES

MAX_BACKFILL_DAYS = 60
DEFAULT_DELAY_MS = 60_000
DEFAULT_GAP_WINDOW_DAYS = 30
DEFAULT_GAP_THRESHOLD = 50

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def ingest_date_job_id(day: date) -> str:
    return f"ingest-date-{day.isoformat()}"


def date_range(start: date, end: date) -> List[date]:
    """Inclusive list of days from start to end."""
    return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def is_weekend(day: date) -> bool:
    return day.weekday() >= 5


def gap_window(today: date, window_days: int = DEFAULT_GAP_WINDOW_DAYS) -> Tuple[date, date]:
    """Trailing window of ``window_days`` days ending yesterday, clamped to 1..MAX_BACKFILL_DAYS."""
    window_days = min(max(1, int(window_days)), MAX_BACKFILL_DAYS)
    end = today - timedelta(days=1)
    return end - timedelta(days=window_days - 1), end


def find_gaps(
    counts: Dict[str, int],
    *,
    start: date,
    end: date,
    threshold: int = DEFAULT_GAP_THRESHOLD,
) -> List[date]:
    """Weekdays in [start, end] whose paper count is below ``threshold``."""
    return [
        day
        for day in date_range(start, end)
        if not is_weekend(day) and counts.get(day.isoformat(), 0) < threshold
    ]


def parse_iso_date(value: Any, field_name: str) -> date:
    if not isinstance(value, str) or not _ISO_DATE.match(value):
        raise BackfillRequestError(f"Invalid {field_name} {value!r}. Use YYYY-MM-DD")
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise BackfillRequestError(f"Invalid {field_name} {value!r}: {e}") from e


@dataclass
class BackfillPlan:
    dates: List[date]
    categories: List[str]
    delay_ms: int = DEFAULT_DELAY_MS
    skipped_dates: List[date] = field(default_factory=list)

    @property
    def estimated_minutes(self) -> int:
        return math.ceil(len(self.dates) * self.delay_ms / 60_000)

    def job_id(self, day: date) -> str:
        return ingest_date_job_id(day)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "dates": [d.isoformat() for d in self.dates],
            "categories": list(self.categories),
            "delay_ms": self.delay_ms,
            "estimated_minutes": self.estimated_minutes,
        }


def plan_backfill(
    start_date: Any,
    end_date: Any,
    *,
    categories: Optional[Iterable[str]] = None,
    delay_ms: Optional[int] = None,
    max_days: int = MAX_BACKFILL_DAYS,
) -> BackfillPlan:
    """
    Validate a manual backfill request.

    Raises BackfillRequestError before anything is enqueued when the dates
    are malformed, reversed, span more than ``max_days`` days, or no valid
    category remains.
    """
    if not start_date or not end_date:
        raise BackfillRequestError("start_date and end_date are required")
    start = parse_iso_date(start_date, "start_date")
    end = parse_iso_date(end_date, "end_date")
    if start > end:
        raise BackfillRequestError("start_date must be before or equal to end_date")

    days = date_range(start, end)
    if len(days) > max_days:
        raise BackfillRequestError(f"Too many dates ({len(days)}). Maximum {max_days} days per request.")

    requested = list(categories) if categories is not None else list(AI_CATEGORIES)
    valid = [c for c in requested if c in AI_CATEGORIES]
    if not valid:
        raise BackfillRequestError(f"Invalid categories. Valid options: {', '.join(AI_CATEGORIES)}")

    delay = DEFAULT_DELAY_MS if delay_ms is None else int(delay_ms)
    if delay < 0:
        raise BackfillRequestError("delay_ms must not be negative")
    return BackfillPlan(dates=days, categories=valid, delay_ms=delay)


def plan_gap_backfill(
    counts: Dict[str, int],
    start_date: Any,
    end_date: Any,
    *,
    threshold: int = DEFAULT_GAP_THRESHOLD,
    categories: Optional[Iterable[str]] = None,
    delay_ms: Optional[int] = None,
) -> BackfillPlan:
    """Like plan_backfill, restricted to weekdays whose count is under ``threshold``."""
    plan = plan_backfill(start_date, end_date, categories=categories, delay_ms=delay_ms)
    gaps = find_gaps(counts, start=plan.dates[0], end=plan.dates[-1], threshold=threshold)
    plan.skipped_dates = [d for d in plan.dates if d not in gaps]
    plan.dates = gaps
    return plan

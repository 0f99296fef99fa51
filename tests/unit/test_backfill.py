from __future__ import annotations

from datetime import date

import pytest

from paperpulse.application.services.backfill import (
    MAX_BACKFILL_DAYS,
    find_gaps,
    gap_window,
    plan_backfill,
    plan_gap_backfill,
)
from paperpulse.domain.errors import BackfillRequestError


def test_plan_covers_inclusive_range_with_defaults():
    plan = plan_backfill("2024-01-01", "2024-01-03")
    assert plan.dates == [date(2024, 1, 1), date(2024, 1, 2), date(2024, 1, 3)]
    assert plan.categories == ["cs.AI", "cs.LG", "cs.CL", "cs.CV", "cs.NE", "stat.ML"]
    assert plan.delay_ms == 60_000
    assert plan.estimated_minutes == 3
    assert plan.job_id(date(2024, 1, 2)) == "ingest-date-2024-01-02"


@pytest.mark.parametrize(
    "start,end,message",
    [
        (None, "2024-01-01", "required"),
        ("2024/01/01", "2024-01-02", "Invalid start_date"),
        ("2024-02-30", "2024-03-01", "Invalid start_date"),
        ("2024-01-05", "2024-01-01", "before or equal"),
    ],
)
def test_plan_rejects_bad_dates(start, end, message):
    with pytest.raises(BackfillRequestError, match=message):
        plan_backfill(start, end)


def test_plan_rejects_more_than_max_days():
    plan_backfill("2024-01-01", "2024-02-29")  # exactly 60 days
    with pytest.raises(BackfillRequestError, match=f"Maximum {MAX_BACKFILL_DAYS}"):
        plan_backfill("2024-01-01", "2024-03-01")


def test_plan_filters_categories_and_rejects_none_valid():
    plan = plan_backfill("2024-01-01", "2024-01-01", categories=["cs.AI", "math.CO"])
    assert plan.categories == ["cs.AI"]
    with pytest.raises(BackfillRequestError, match="Invalid categories"):
        plan_backfill("2024-01-01", "2024-01-01", categories=["math.CO"])


def test_find_gaps_skips_weekends():
    # 2024-01-05 is a Friday, 06/07 the weekend, 08 a Monday
    counts = {"2024-01-05": 10, "2024-01-06": 0, "2024-01-07": 0, "2024-01-08": 120}
    gaps = find_gaps(counts, start=date(2024, 1, 5), end=date(2024, 1, 8), threshold=50)
    assert gaps == [date(2024, 1, 5)]


def test_gap_plan_reports_skipped_days():
    counts = {"2024-01-08": 200, "2024-01-09": 3}
    plan = plan_gap_backfill(counts, "2024-01-08", "2024-01-10", threshold=50)
    assert plan.dates == [date(2024, 1, 9), date(2024, 1, 10)]
    assert plan.skipped_dates == [date(2024, 1, 8)]


def test_gap_window_ends_yesterday():
    start, end = gap_window(date(2024, 3, 31), 30)
    assert end == date(2024, 3, 30)
    assert start == date(2024, 3, 1)


def test_gap_window_is_clamped_to_backfill_limit():
    start, end = gap_window(date(2024, 6, 1), 90)
    assert (end - start).days + 1 == MAX_BACKFILL_DAYS
    # The clamped window is always a valid backfill range
    plan = plan_gap_backfill({}, start.isoformat(), end.isoformat())
    assert plan.dates
    assert gap_window(date(2024, 6, 1), 0) == (date(2024, 5, 31), date(2024, 5, 31))

"""
Spend accounting and budget gating for v3 analysis batches.

Spend is the sum of cost_cents over completed batch jobs, bucketed by the
job's completion time in UTC.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List

from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.domain.errors import BudgetExceededError
from paperpulse.infrastructure.stores.batch_store import BatchStore

logger = logging.getLogger(__name__)

DEFAULT_AVG_COST_CENTS = 1.1
DEFAULT_AVG_TOKENS = 1200
DEFAULT_AVG_TIME_MS = 3000
MAX_RATE_PER_MIN = 5
PROJECTION_SIZES = (10, 100, 500, 1000)
SUFFICIENT_SAMPLE = 5


def start_of_day(now: datetime) -> datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Monday 00:00 of the current week."""
    return start_of_day(now) - timedelta(days=now.weekday())


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def check_budget(
    requested_cents: int,
    *,
    daily_budget_cents: int,
    today_spent_cents: int,
    monthly_budget_cents: int,
    month_spent_cents: int,
) -> None:
    """Raise BudgetExceededError naming the first window (daily, then monthly) that would be overrun."""
    if today_spent_cents + requested_cents > daily_budget_cents:
        raise BudgetExceededError(
            "daily",
            spent_cents=today_spent_cents,
            budget_cents=daily_budget_cents,
            requested_cents=requested_cents,
        )
    if month_spent_cents + requested_cents > monthly_budget_cents:
        raise BudgetExceededError(
            "monthly",
            spent_cents=month_spent_cents,
            budget_cents=monthly_budget_cents,
            requested_cents=requested_cents,
        )


@dataclass
class BudgetStatus:
    daily_budget_cents: int
    monthly_budget_cents: int
    today_spent_cents: int
    month_spent_cents: int

    @property
    def daily_remaining_cents(self) -> int:
        return max(0, self.daily_budget_cents - self.today_spent_cents)

    @property
    def monthly_remaining_cents(self) -> int:
        return max(0, self.monthly_budget_cents - self.month_spent_cents)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["daily_remaining_cents"] = self.daily_remaining_cents
        data["monthly_remaining_cents"] = self.monthly_remaining_cents
        return data


@dataclass
class JobAverages:
    cost_cents: float
    tokens: float
    time_ms: float
    total_completed: int

    @property
    def rate_per_min(self) -> float:
        return min(MAX_RATE_PER_MIN, 60000 / max(self.time_ms, 1000))


def format_minutes(minutes: int) -> str:
    if minutes < 1:
        return "< 1 min"
    if minutes < 60:
        return f"~{minutes} min"
    hours, mins = divmod(minutes, 60)
    return f"~{hours}h {mins}m" if mins else f"~{hours}h"


class BudgetController:
    def __init__(
        self,
        config: RuntimeConfigService,
        batch_store: BatchStore,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._config = config
        self._batches = batch_store
        self._clock = clock

    async def status(self) -> BudgetStatus:
        cfg = await self._config.get_v3_config()
        now = self._clock()
        return BudgetStatus(
            daily_budget_cents=cfg.daily_budget_cents,
            monthly_budget_cents=cfg.monthly_budget_cents,
            today_spent_cents=self._batches.spent_cents_since(start_of_day(now)),
            month_spent_cents=self._batches.spent_cents_since(start_of_month(now)),
        )

    def averages(self) -> JobAverages:
        raw = self._batches.completed_job_averages()
        total = int(raw["total_completed"])
        if total == 0:
            return JobAverages(DEFAULT_AVG_COST_CENTS, DEFAULT_AVG_TOKENS, DEFAULT_AVG_TIME_MS, 0)
        return JobAverages(
            cost_cents=raw["avg_cost_cents"],
            tokens=raw["avg_tokens"] or DEFAULT_AVG_TOKENS,
            time_ms=raw["avg_time_ms"] or DEFAULT_AVG_TIME_MS,
            total_completed=total,
        )

    def estimate_cost_cents(self, size: int) -> int:
        return round(self.averages().cost_cents * size)

    async def ensure_within_budget(self, size: int) -> BudgetStatus:
        """Reject a batch of ``size`` papers whose projected cost overruns either window."""
        status = await self.status()
        requested = self.estimate_cost_cents(size)
        check_budget(
            requested,
            daily_budget_cents=status.daily_budget_cents,
            today_spent_cents=status.today_spent_cents,
            monthly_budget_cents=status.monthly_budget_cents,
            month_spent_cents=status.month_spent_cents,
        )
        return status

    def spending(self) -> Dict[str, int]:
        now = self._clock()
        return {
            "today_cents": self._batches.spent_cents_since(start_of_day(now)),
            "week_cents": self._batches.spent_cents_since(start_of_week(now)),
            "month_cents": self._batches.spent_cents_since(start_of_month(now)),
            "all_time_cents": self._batches.spent_cents_since(None),
        }

    async def projections(self, remaining: int) -> Dict[str, Any]:
        avg = self.averages()
        cfg = await self._config.get_v3_config()
        rows: List[Dict[str, Any]] = []
        for size in [s for s in (*PROJECTION_SIZES, remaining) if s > 0]:
            cost = round(avg.cost_cents * size)
            minutes = round(size / avg.rate_per_min)
            rows.append(
                {
                    "papers": size,
                    "est_cost_cents": cost,
                    "est_cost_dollars": f"${cost / 100:.2f}",
                    "est_minutes": minutes,
                    "est_time_formatted": format_minutes(minutes),
                    "exceeds_daily_budget": cost > cfg.daily_budget_cents,
                    "exceeds_monthly_budget": cost > cfg.monthly_budget_cents,
                }
            )
        return {
            "averages": {
                "cost_cents": round(avg.cost_cents, 2),
                "tokens": round(avg.tokens),
                "time_ms": round(avg.time_ms),
                "rate_per_min": round(avg.rate_per_min, 1),
                "total_completed": avg.total_completed,
            },
            "remaining": remaining,
            "projections": rows,
            "sufficient_data": avg.total_completed >= SUFFICIENT_SAMPLE,
        }

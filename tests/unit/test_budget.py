from __future__ import annotations

from datetime import datetime, timezone

import pytest

from paperpulse.application.services.budget import (
    BudgetController,
    check_budget,
    format_minutes,
    start_of_week,
)
from paperpulse.application.services.runtime_config import RuntimeConfigService
from paperpulse.domain.errors import BudgetExceededError
from paperpulse.infrastructure.redis.config_store import RedisConfigStore
from paperpulse.infrastructure.stores.batch_store import BatchStore
from paperpulse.infrastructure.stores.paper_store import PaperStore
from tests.fakes import FakeRedis, make_record


def test_daily_window_named_when_today_would_overrun():
    with pytest.raises(BudgetExceededError) as info:
        check_budget(
            30,
            daily_budget_cents=500,
            today_spent_cents=480,
            monthly_budget_cents=15000,
            month_spent_cents=480,
        )
    assert info.value.window == "daily"
    assert "daily budget exceeded" in str(info.value)


def test_monthly_window_named_when_month_would_overrun():
    with pytest.raises(BudgetExceededError) as info:
        check_budget(
            30,
            daily_budget_cents=500,
            today_spent_cents=0,
            monthly_budget_cents=1000,
            month_spent_cents=990,
        )
    assert info.value.window == "monthly"


def test_exact_fit_is_allowed():
    check_budget(20, daily_budget_cents=500, today_spent_cents=480, monthly_budget_cents=500, month_spent_cents=480)


def test_week_starts_monday():
    wednesday = datetime(2024, 1, 10, 15, 30, tzinfo=timezone.utc)
    assert start_of_week(wednesday) == datetime(2024, 1, 8, tzinfo=timezone.utc)


def test_format_minutes():
    assert format_minutes(0) == "< 1 min"
    assert format_minutes(45) == "~45 min"
    assert format_minutes(120) == "~2h"
    assert format_minutes(135) == "~2h 15m"


@pytest.fixture
def controller(db_url):
    config = RuntimeConfigService(RedisConfigStore(FakeRedis()), env_default=False)
    return BudgetController(config, BatchStore(db_url)), config


@pytest.mark.asyncio
async def test_controller_uses_default_averages_without_history(controller):
    budget, _ = controller
    averages = budget.averages()
    assert averages.cost_cents == 1.1
    assert averages.total_completed == 0
    assert budget.estimate_cost_cents(100) == 110

    projections = await budget.projections(42)
    assert [row["papers"] for row in projections["projections"]] == [10, 100, 500, 1000, 42]
    assert projections["averages"]["rate_per_min"] == 5
    assert projections["sufficient_data"] is False


@pytest.mark.asyncio
async def test_controller_rejects_batch_over_configured_budget(controller):
    budget, config = controller
    await budget.ensure_within_budget(10)

    await config.set_budget(daily_cents=5)
    with pytest.raises(BudgetExceededError) as info:
        await budget.ensure_within_budget(10)
    assert info.value.window == "daily"


@pytest.mark.asyncio
async def test_spend_counts_completed_jobs(controller, db_url):
    budget, _ = controller
    paper_id = PaperStore(db_url).insert_paper(make_record("2401.00001"))
    BatchStore(db_url).record_standalone_job(paper_id, tokens_used=7000, cost_cents=7, processing_time_ms=2000)

    spent = budget.spending()
    assert spent["today_cents"] == 7
    assert spent["all_time_cents"] == 7
    status = await budget.status()
    assert status.daily_remaining_cents == 493

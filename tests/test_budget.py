"""Budget admission, alerting and cost analytics."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import ManualClock
from fleet.core.context import FleetContext
from fleet.core.models import BudgetPeriod, CostRecord, ScopeKind, Worker
from fleet.services.budget import BUDGET_EXCEEDED, BUDGET_WARNING, BudgetLedger


@pytest.fixture
def ledger(ctx: FleetContext) -> BudgetLedger:
    return BudgetLedger(ctx)


def add_cost(
    ctx: FleetContext,
    cost: float,
    *,
    worker_id: str = "agent_a",
    model: str = "claude-sonnet-4-20250514",
    hours_ago: float = 0.5,
    input_tokens: int = 1000,
    output_tokens: int = 500,
) -> None:
    ctx.store.create_cost_record(
        CostRecord(
            id=f"cost_{len(ctx.store.list_cost_records())}",
            worker_id=worker_id,
            provider="anthropic",
            model=model,
            cost=cost,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            timestamp=ctx.now() - timedelta(hours=hours_ago),
        )
    )


def test_request_over_limit_is_denied(ledger: BudgetLedger) -> None:
    ledger.set_budget("agent_a", limit=10.0)
    ledger.record_cost("agent_a", 9.0)

    decision = ledger.can_proceed("agent_a", 2.0)

    assert decision.allowed is False
    assert decision.reason == "Budget exceeded"
    assert decision.current == pytest.approx(9.0)
    assert decision.remaining == pytest.approx(1.0)
    assert ledger.can_proceed("agent_a", 1.0).allowed is True


def test_scope_without_budget_is_allowed(ledger: BudgetLedger) -> None:
    decision = ledger.can_proceed("agent_unknown", 100.0)

    assert decision.allowed is True
    assert decision.reason == "No budget configured"
    assert ledger.record_cost("agent_unknown", 1.0) is None


def test_admit_checks_worker_and_pool_scopes(ledger: BudgetLedger) -> None:
    ledger.set_budget("agent_a", limit=10.0)
    ledger.set_pool_budget("default", limit=1.0)

    denied = ledger.admit(("agent_a", "default"), 2.0)
    assert denied.allowed is False
    assert denied.scope_id == "default"

    allowed = ledger.admit(("agent_a", "default"), 0.5)
    assert allowed.allowed is True
    assert allowed.scope_id == "default"
    assert ledger.get_budget("default").scope_kind is ScopeKind.POOL


def test_warning_then_no_second_alert_in_same_period(
    ctx: FleetContext, ledger: BudgetLedger
) -> None:
    ledger.set_budget("agent_a", limit=10.0)

    ledger.record_cost("agent_a", 8.5)
    ledger.record_cost("agent_a", 2.0)

    alerts = ctx.store.list_alerts()
    assert [alert.alert_type for alert in alerts] == [BUDGET_WARNING]
    assert alerts[0].severity == "high"
    assert ledger.get_budget("agent_a").alert_sent is True
    assert ledger.check_all_budgets() == []


def test_exceeded_takes_precedence_over_warning(ctx: FleetContext, ledger: BudgetLedger) -> None:
    ledger.set_budget("agent_a", limit=10.0)

    ledger.record_cost("agent_a", 12.0)

    alerts = ctx.store.list_alerts()
    assert [alert.alert_type for alert in alerts] == [BUDGET_EXCEEDED]
    assert alerts[0].severity == "critical"


def test_zero_limit_blocks_spend_without_alerting(
    ctx: FleetContext, ledger: BudgetLedger
) -> None:
    ledger.set_pool_budget("default", limit=0.0)

    assert ledger.check_all_budgets() == []
    assert ctx.store.list_alerts() == []
    assert ledger.can_proceed("default", 0.01).allowed is False

    ledger.record_cost("default", 0.01)
    assert [alert.alert_type for alert in ctx.store.list_alerts()] == [BUDGET_EXCEEDED]


def test_period_rollover_resets_spend_and_alert(
    ctx: FleetContext, ledger: BudgetLedger, clock: ManualClock
) -> None:
    ledger.set_budget("agent_a", limit=10.0, period=BudgetPeriod.HOURLY)
    start = ledger.get_budget("agent_a").period_start
    ledger.record_cost("agent_a", 9.5)
    assert ledger.can_proceed("agent_a", 1.0).allowed is False

    clock.advance(hours=2, minutes=30)

    budget = ledger.get_budget("agent_a")
    assert budget.current_spent == 0.0
    assert budget.alert_sent is False
    assert budget.period_start == start + timedelta(hours=2)
    assert ledger.can_proceed("agent_a", 1.0).allowed is True


def test_set_budget_validates_input(ledger: BudgetLedger) -> None:
    with pytest.raises(ValueError):
        ledger.set_budget("agent_a", limit=-1.0)
    with pytest.raises(ValueError):
        ledger.set_budget("agent_a", limit=1.0, alert_threshold=1.5)
    with pytest.raises(ValueError):
        ledger.record_cost("agent_a", -0.1)


def test_detect_anomalies_flags_spiking_hour(ctx: FleetContext, ledger: BudgetLedger) -> None:
    for hour in range(1, 24):
        add_cost(ctx, 0.10, hours_ago=hour + 0.5)
    add_cost(ctx, 5.0, hours_ago=0.5)

    report = ledger.detect_anomalies()

    assert len(report.hours) == 24
    assert [spend.hour for spend in report.anomalies] == [0]
    assert report.anomalies[0].cost == pytest.approx(5.0)
    assert report.threshold > report.average


def test_detect_anomalies_with_no_spend(ledger: BudgetLedger) -> None:
    report = ledger.detect_anomalies()

    assert report.average == 0.0
    assert report.standard_deviation == 0.0
    assert report.anomalies == []


def test_optimization_suggests_cheaper_model(ctx: FleetContext, ledger: BudgetLedger) -> None:
    add_cost(ctx, 1.5, model="claude-opus-4-20250514", input_tokens=50_000, output_tokens=10_000)
    add_cost(ctx, 0.2, worker_id="agent_b", model="claude-sonnet-4-20250514")

    suggestions = ledger.optimization_suggestions()

    assert len(suggestions) == 1
    suggestion = suggestions[0]
    assert suggestion.scope_id == "agent_a"
    assert suggestion.suggested_model == "claude-3-5-sonnet-20241022"
    assert suggestion.savings == pytest.approx(1.5 - 0.3)
    assert suggestion.savings_percent == pytest.approx(80.0)


def test_cost_breakdown_and_timeline(ctx: FleetContext, ledger: BudgetLedger) -> None:
    add_cost(ctx, 0.4, hours_ago=1)
    add_cost(ctx, 0.6, hours_ago=2, model="claude-3-5-haiku-20241022")
    add_cost(ctx, 1.0, hours_ago=30)
    ledger.set_budget("agent_a", limit=5.0)

    breakdown = ledger.cost_breakdown("agent_a")
    assert breakdown["total_cost"] == pytest.approx(1.0)
    assert breakdown["request_count"] == 2
    assert set(breakdown["by_model"]) == {"claude-sonnet-4-20250514", "claude-3-5-haiku-20241022"}
    assert breakdown["budget"]["limit"] == 5.0

    timeline = ledger.cost_timeline("agent_a", days=3)
    assert [point["cost"] for point in timeline] == pytest.approx([0.0, 1.0, 1.0])
    assert timeline[-1]["requests"] == 2


def test_predict_cost_uses_history(ctx: FleetContext, ledger: BudgetLedger) -> None:
    ctx.store.create_worker(
        Worker(
            id="agent_a",
            agent_type="code_review",
            model="claude-sonnet-4-20250514",
            provider="anthropic",
        )
    )
    for _ in range(6):
        add_cost(ctx, 0.2)

    prediction = ledger.predict_cost("agent_a", payload={"diff": "x" * 2_000})

    assert prediction.sample_size == 6
    assert prediction.confidence == "medium"
    assert prediction.complexity == 1.0
    assert prediction.estimated_cost == pytest.approx(0.2)


def test_predict_cost_without_history_uses_profile(ledger: BudgetLedger) -> None:
    prediction = ledger.predict_cost(None, task_type="review_pr", agent_type="code_review")

    assert prediction.confidence == "low"
    assert prediction.sample_size == 0
    # 5000 input and 2000 output tokens at $3 / $15 per million.
    assert prediction.estimated_cost == pytest.approx(0.045)


def test_estimate_complexity_bands() -> None:
    assert BudgetLedger.estimate_complexity(None) == 1.0
    assert BudgetLedger.estimate_complexity({"a": "b"}) == 0.5
    assert BudgetLedger.estimate_complexity({"a": "x" * 10_000}) == 1.5
    assert BudgetLedger.estimate_complexity({"a": "x" * 30_000}) == 2.0

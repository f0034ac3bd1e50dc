"""Budget admission control, spend tracking and cost analytics."""
from __future__ import annotations

import asyncio
import json
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog

from fleet.core.context import FleetContext
from fleet.core.models import Alert, Budget, BudgetPeriod, CostRecord, ScopeKind
from fleet.core.timers import cancel_quietly, run_periodically
from fleet.services import pricing
from fleet.storage.base import Store

logger = structlog.get_logger(__name__)

BUDGET_EXCEEDED = "budget_exceeded"
BUDGET_WARNING = "budget_warning"


@dataclass(slots=True)
class AdmissionDecision:
    allowed: bool
    reason: str
    scope_id: Optional[str] = None
    current: float = 0.0
    estimated: float = 0.0
    limit: Optional[float] = None
    remaining: Optional[float] = None


@dataclass(slots=True)
class HourlySpend:
    hour: int
    start: datetime
    cost: float


@dataclass(slots=True)
class AnomalyReport:
    average: float
    standard_deviation: float
    threshold: float
    hours: List[HourlySpend]
    anomalies: List[HourlySpend] = field(default_factory=list)


@dataclass(slots=True)
class OptimizationSuggestion:
    scope_id: str
    current_model: str
    suggested_model: str
    reason: str
    current_cost: float
    potential_cost: float
    savings: float
    savings_percent: float
    kind: str = "downgrade_model"


@dataclass(slots=True)
class CostPrediction:
    estimated_cost: float
    average_cost: float
    average_input_tokens: float
    average_output_tokens: float
    complexity: float
    confidence: str
    sample_size: int


class BudgetLedger:
    """Tracks spend per scope (a worker id or a pool name) over rolling periods.

    The store is the source of truth: every check reads the current row, rolls
    the period forward if it has elapsed and only then compares spend.
    """

    def __init__(self, ctx: FleetContext) -> None:
        self._ctx = ctx
        self._sweep: Optional[asyncio.Task[None]] = None

    @property
    def store(self) -> Store:
        return self._ctx.store

    # Lifecycle

    async def start(self) -> None:
        """Start the periodic budget sweep."""
        if self._sweep is not None:
            return
        interval = self._ctx.settings.budget.check_interval
        self._sweep = asyncio.create_task(
            run_periodically("budget.check_all", interval, self.check_all_budgets)
        )
        logger.info("budget.sweep_started", interval=interval)

    async def stop(self) -> None:
        await cancel_quietly(self._sweep)
        self._sweep = None

    # Configuration

    def set_budget(
        self,
        scope_id: str,
        limit: float,
        period: BudgetPeriod = BudgetPeriod.DAILY,
        alert_threshold: Optional[float] = None,
        scope_kind: ScopeKind = ScopeKind.WORKER,
    ) -> Budget:
        """Create or replace a scope's budget. Replacing starts a fresh period."""
        if limit < 0:
            raise ValueError("Budget limit must be non-negative")
        if alert_threshold is None:
            alert_threshold = self._ctx.settings.budget.default_alert_threshold
        if not 0 < alert_threshold <= 1:
            raise ValueError("Alert threshold must be in (0, 1]")
        budget = self.store.save_budget(
            Budget(
                scope_id=scope_id,
                limit=limit,
                period=BudgetPeriod(period),
                scope_kind=scope_kind,
                current_spent=0.0,
                period_start=self._ctx.now(),
                alert_threshold=alert_threshold,
                alert_sent=False,
            )
        )
        logger.info(
            "budget.configured",
            scope_id=scope_id,
            scope_kind=scope_kind.value,
            limit=limit,
            period=budget.period.value,
        )
        return budget

    def set_pool_budget(
        self,
        pool: str,
        limit: float,
        period: BudgetPeriod = BudgetPeriod.DAILY,
        alert_threshold: Optional[float] = None,
    ) -> Budget:
        return self.set_budget(pool, limit, period, alert_threshold, scope_kind=ScopeKind.POOL)

    def get_budget(self, scope_id: str) -> Optional[Budget]:
        budget = self.store.get_budget(scope_id)
        return self._roll_period(budget) if budget else None

    def list_budgets(self) -> List[Budget]:
        return [self._roll_period(budget) for budget in self.store.list_budgets()]

    # Admission

    def can_proceed(self, scope_id: str, estimated_cost: float) -> AdmissionDecision:
        """Would spending ``estimated_cost`` keep the scope within its limit?"""
        budget = self.store.get_budget(scope_id)
        if budget is None:
            return AdmissionDecision(True, "No budget configured", scope_id, estimated=estimated_cost)

        budget = self._roll_period(budget)
        total = budget.current_spent + estimated_cost
        if total > budget.limit:
            logger.warning(
                "budget.request_blocked",
                scope_id=scope_id,
                projected=round(total, 6),
                limit=budget.limit,
            )
            return AdmissionDecision(
                allowed=False,
                reason="Budget exceeded",
                scope_id=scope_id,
                current=budget.current_spent,
                estimated=estimated_cost,
                limit=budget.limit,
                remaining=budget.remaining,
            )
        return AdmissionDecision(
            allowed=True,
            reason="Within budget",
            scope_id=scope_id,
            current=budget.current_spent,
            estimated=estimated_cost,
            limit=budget.limit,
            remaining=budget.remaining,
        )

    def admit(self, scopes: Iterable[str], estimated_cost: float) -> AdmissionDecision:
        """Check every scope; the first denial wins.

        When all scopes allow, the decision with the least headroom is returned.
        """
        tightest: Optional[AdmissionDecision] = None
        for scope_id in scopes:
            decision = self.can_proceed(scope_id, estimated_cost)
            if not decision.allowed:
                return decision
            if decision.remaining is None:
                continue
            if tightest is None or decision.remaining < (tightest.remaining or 0.0):
                tightest = decision
        return tightest or AdmissionDecision(True, "No budget configured", estimated=estimated_cost)

    # Spend

    def record_cost(self, scope_id: str, cost: float) -> Optional[Budget]:
        """Add actual spend to the scope and re-evaluate its alert thresholds."""
        if cost < 0:
            raise ValueError("Cost must be non-negative")
        budget = self.store.get_budget(scope_id)
        if budget is None:
            return None
        self._roll_period(budget)
        updated = self.store.increment_budget_spent(scope_id, cost)
        self.check_budget(updated)
        return self.store.get_budget(scope_id)

    def check_budget(self, budget: Budget) -> Optional[Alert]:
        """Raise at most one alert per period for the scope.

        Exceeded takes precedence over the warning threshold. A scope whose
        period just rolled over, or with no spend yet, is not alerted on.
        """
        rolled = self._roll_period(budget)
        if rolled.period_start != budget.period_start or rolled.alert_sent:
            return None
        if rolled.current_spent <= 0:
            return None

        if rolled.current_spent >= rolled.limit:
            alert_type, severity, log_level = BUDGET_EXCEEDED, "critical", "error"
            message = (
                f"Budget exceeded for {rolled.scope_id}: "
                f"${rolled.current_spent:.2f} / ${rolled.limit:.2f}"
            )
        elif rolled.current_spent >= rolled.limit * rolled.alert_threshold:
            alert_type, severity, log_level = BUDGET_WARNING, "high", "warning"
            percent = round(rolled.current_spent / rolled.limit * 100) if rolled.limit else 100
            message = (
                f"Budget threshold reached for {rolled.scope_id}: "
                f"${rolled.current_spent:.2f} / ${rolled.limit:.2f} ({percent}%)"
            )
        else:
            return None

        self.store.mark_budget_alert_sent(rolled.scope_id)
        alert = self.store.create_alert(
            Alert(
                id=f"alert_{uuid.uuid4().hex}",
                alert_type=alert_type,
                severity=severity,
                message=message,
                scope_id=rolled.scope_id,
                details={
                    "scope_kind": rolled.scope_kind.value,
                    "spent": rolled.current_spent,
                    "limit": rolled.limit,
                    "threshold": rolled.alert_threshold,
                },
                created_at=self._ctx.now(),
            )
        )
        getattr(logger, log_level)(
            f"budget.{alert_type}",
            scope_id=rolled.scope_id,
            spent=rolled.current_spent,
            limit=rolled.limit,
        )
        return alert

    def check_all_budgets(self) -> List[Alert]:
        """Periodic sweep: roll elapsed periods and raise pending alerts."""
        alerts: List[Alert] = []
        for budget in self.store.list_budgets():
            alert = self.check_budget(budget)
            if alert is not None:
                alerts.append(alert)
        return alerts

    def _roll_period(self, budget: Budget) -> Budget:
        """Reset spend when the period has elapsed; the start advances by whole periods."""
        now = self._ctx.now()
        length = budget.period.seconds
        elapsed = (now - budget.period_start).total_seconds()
        if elapsed < length:
            return budget
        periods = math.floor(elapsed / length)
        period_start = budget.period_start + timedelta(seconds=periods * length)
        logger.info(
            "budget.period_reset",
            scope_id=budget.scope_id,
            previous_spent=budget.current_spent,
            period_start=period_start.isoformat(),
        )
        return self.store.reset_budget_period(budget.scope_id, period_start)

    # Analytics

    def detect_anomalies(
        self, worker_id: Optional[str] = None, threshold: Optional[float] = None
    ) -> AnomalyReport:
        """Flag hours in the trailing day whose spend exceeds mean + k * stddev."""
        if threshold is None:
            threshold = self._ctx.settings.budget.anomaly_threshold
        now = self._ctx.now()
        records = self.store.list_cost_records(
            since=now - timedelta(hours=24), until=now, worker_id=worker_id
        )
        hours = []
        for index in range(24):
            start = now - timedelta(hours=index + 1)
            end = now - timedelta(hours=index)
            cost = sum(r.cost for r in records if start <= r.timestamp < end)
            hours.append(HourlySpend(hour=index, start=start, cost=cost))

        costs = [h.cost for h in hours]
        average = sum(costs) / len(costs)
        deviation = math.sqrt(sum((c - average) ** 2 for c in costs) / len(costs))
        limit = average + threshold * deviation
        return AnomalyReport(
            average=average,
            standard_deviation=deviation,
            threshold=limit,
            hours=hours,
            anomalies=[h for h in hours if h.cost > limit],
        )

    def optimization_suggestions(self) -> List[OptimizationSuggestion]:
        """Suggest cheaper model tiers based on the past week's usage."""
        suggestions: List[OptimizationSuggestion] = []
        for item in self.cost_summary(BudgetPeriod.WEEKLY):
            downgrade = pricing.MODEL_DOWNGRADES.get(item["model"])
            if downgrade is None:
                continue
            cheaper, min_requests, reason = downgrade
            if min_requests and item["request_count"] <= min_requests:
                continue
            provider = "anthropic" if cheaper.startswith("claude") else item["provider"]
            potential = pricing.calculate_cost(
                provider, cheaper, item["input_tokens"], item["output_tokens"]
            )
            savings = item["total_cost"] - potential
            if savings <= 0:
                continue
            suggestions.append(
                OptimizationSuggestion(
                    scope_id=item["worker_id"],
                    current_model=item["model"],
                    suggested_model=cheaper,
                    reason=reason,
                    current_cost=item["total_cost"],
                    potential_cost=potential,
                    savings=savings,
                    savings_percent=savings / item["total_cost"] * 100,
                )
            )
        return suggestions

    def cost_breakdown(
        self, worker_id: Optional[str] = None, period: BudgetPeriod = BudgetPeriod.DAILY
    ) -> Dict[str, Any]:
        """Spend split by provider and model over the last period."""
        now = self._ctx.now()
        records = self.store.list_cost_records(
            since=now - timedelta(seconds=period.seconds), worker_id=worker_id
        )
        breakdown: Dict[str, Any] = {
            "by_provider": {},
            "by_model": {},
            "total_cost": 0.0,
            "total_input_tokens": 0,
            "total_output_tokens": 0,
            "request_count": len(records),
        }
        for record in records:
            for bucket, key in (("by_provider", record.provider), ("by_model", record.model)):
                entry = breakdown[bucket].setdefault(
                    key, {"cost": 0.0, "input_tokens": 0, "output_tokens": 0, "requests": 0}
                )
                entry["cost"] += record.cost
                entry["input_tokens"] += record.input_tokens
                entry["output_tokens"] += record.output_tokens
                entry["requests"] += 1
            breakdown["total_cost"] += record.cost
            breakdown["total_input_tokens"] += record.input_tokens
            breakdown["total_output_tokens"] += record.output_tokens

        budget = self.get_budget(worker_id) if worker_id else None
        if budget is not None:
            breakdown["budget"] = _budget_info(budget)
        return breakdown

    def cost_summary(self, period: BudgetPeriod = BudgetPeriod.DAILY) -> List[Dict[str, Any]]:
        """Per-worker spend grouped by provider and model, with budget info."""
        now = self._ctx.now()
        groups: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        for record in self.store.list_cost_records(since=now - timedelta(seconds=period.seconds)):
            item = groups.setdefault(
                (record.worker_id, record.provider, record.model),
                {
                    "worker_id": record.worker_id,
                    "provider": record.provider,
                    "model": record.model,
                    "total_cost": 0.0,
                    "input_tokens": 0,
                    "output_tokens": 0,
                    "request_count": 0,
                },
            )
            item["total_cost"] += record.cost
            item["input_tokens"] += record.input_tokens
            item["output_tokens"] += record.output_tokens
            item["request_count"] += 1

        summary = sorted(groups.values(), key=lambda item: item["total_cost"], reverse=True)
        for item in summary:
            budget = self.store.get_budget(item["worker_id"])
            if budget is not None:
                item["budget"] = _budget_info(budget)
        return summary

    def cost_timeline(self, worker_id: Optional[str] = None, days: int = 7) -> List[Dict[str, Any]]:
        """Daily spend buckets, oldest first, ending now."""
        now = self._ctx.now()
        records = self.store.list_cost_records(
            since=now - timedelta(days=days), until=now, worker_id=worker_id
        )
        points = []
        for index in range(days - 1, -1, -1):
            start = now - timedelta(days=index + 1)
            end = now - timedelta(days=index)
            bucket = [r for r in records if start <= r.timestamp < end]
            points.append(
                {
                    "date": end.date().isoformat(),
                    "start": start,
                    "cost": sum(r.cost for r in bucket),
                    "input_tokens": sum(r.input_tokens for r in bucket),
                    "output_tokens": sum(r.output_tokens for r in bucket),
                    "requests": len(bucket),
                }
            )
        return points

    def predict_cost(
        self,
        worker_id: Optional[str],
        task_type: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        agent_type: Optional[str] = None,
    ) -> CostPrediction:
        """Estimate a task's cost from the worker's last week of spend.

        Falls back to the static token profiles when there is no history.
        """
        worker = self.store.get_worker(worker_id) if worker_id else None
        records: List[CostRecord] = []
        if worker is not None:
            agent_type = worker.agent_type
            records = self.store.list_cost_records(
                since=self._ctx.now() - timedelta(days=7), worker_id=worker.id
            )

        if not records:
            estimate = self._ctx.credentials.predict_cost(agent_type or "", task_type)
            return CostPrediction(estimate, estimate, 0.0, 0.0, 1.0, "low", 0)

        count = len(records)
        average = sum(r.cost for r in records) / count
        complexity = self.estimate_complexity(payload)
        return CostPrediction(
            estimated_cost=average * complexity,
            average_cost=average,
            average_input_tokens=sum(r.input_tokens for r in records) / count,
            average_output_tokens=sum(r.output_tokens for r in records) / count,
            complexity=complexity,
            confidence="high" if count > 10 else "medium" if count > 5 else "low",
            sample_size=count,
        )

    @staticmethod
    def estimate_complexity(payload: Optional[Dict[str, Any]]) -> float:
        """Multiplier from the serialized payload size."""
        if not payload:
            return 1.0
        size = len(json.dumps(payload, default=str))
        if size < 1_000:
            return 0.5
        if size < 5_000:
            return 1.0
        if size < 20_000:
            return 1.5
        return 2.0


def _budget_info(budget: Budget) -> Dict[str, Any]:
    return {
        "limit": budget.limit,
        "spent": budget.current_spent,
        "remaining": budget.remaining,
        "period": budget.period.value,
    }

"""Worker that analyses fleet spend from the ledger without calling a provider."""
from __future__ import annotations

import json
import uuid
from dataclasses import asdict
from typing import Any, Dict, List

import structlog

from fleet.agents.base import WorkerAgent
from fleet.core.errors import InvalidTaskInput
from fleet.core.models import Alert, BudgetPeriod, Task, TaskResult

logger = structlog.get_logger(__name__)

HIGH_UTILIZATION = 0.9
SPIKE_FACTOR = 1.5


def _jsonable(value: Any) -> Any:
    return json.loads(json.dumps(value, default=str))


def _period(data: Dict[str, Any], default: BudgetPeriod) -> BudgetPeriod:
    try:
        return BudgetPeriod(data.get("period", default.value))
    except ValueError:
        raise InvalidTaskInput(f"Invalid period: {data.get('period')}") from None


class CostObservabilityAgent(WorkerAgent):
    """Monitors costs, detects anomalies and suggests optimizations."""

    async def process_task(self, task: Task) -> TaskResult:
        handlers = {
            "monitor_costs": self.monitor_costs,
            "detect_anomalies": self.detect_anomalies,
            "suggest_optimizations": self.suggest_optimizations,
            "generate_report": self.generate_report,
        }
        handler = handlers.get(task.task_type)
        if handler is None:
            raise InvalidTaskInput(f"Unknown task type: {task.task_type}")
        content = handler(task.payload)
        return TaskResult(content=_jsonable(content), cost=0.0, model=self.worker.model)

    def monitor_costs(self, data: Dict[str, Any]) -> Dict[str, Any]:
        worker_id = data.get("worker_id")
        period = _period(data, BudgetPeriod.HOURLY)
        breakdown = self._ledger.cost_breakdown(worker_id, period)
        spend_rate = breakdown["total_cost"] / (period.seconds / 3600)

        budget = self._ledger.get_budget(worker_id) if worker_id else None
        utilization = None
        if budget is not None and budget.limit > 0:
            utilization = budget.current_spent / budget.limit
            if utilization > HIGH_UTILIZATION:
                self._alert(
                    "budget_high_utilization",
                    "high",
                    f"Budget utilization at {round(utilization * 100)}%",
                    worker_id,
                    {"utilization": utilization, "spent": budget.current_spent, "limit": budget.limit},
                )
        return {
            "breakdown": breakdown,
            "pool_stats": self._ctx.credentials.stats(),
            "spend_rate": spend_rate,
            "budget_utilization": utilization,
            "request_count": breakdown["request_count"],
        }

    def detect_anomalies(self, data: Dict[str, Any]) -> Dict[str, Any]:
        worker_id = data.get("worker_id")
        report = self._ledger.detect_anomalies(worker_id, data.get("threshold"))
        for hour in report.anomalies:
            if hour.cost > report.average * SPIKE_FACTOR:
                self._alert(
                    "cost_spike",
                    "high",
                    f"Unusual cost spike detected: ${hour.cost:.2f} for hour",
                    worker_id,
                    {"hour": hour.hour, "cost": hour.cost, "average": report.average},
                )
        return asdict(report)

    def suggest_optimizations(self, data: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [asdict(item) for item in self._ledger.optimization_suggestions()]

    def generate_report(self, data: Dict[str, Any]) -> Dict[str, Any]:
        period = _period(data, BudgetPeriod.DAILY)
        summary = self._ledger.cost_summary(period)
        anomalies = self.detect_anomalies({"threshold": data.get("threshold")})
        optimizations = self.suggest_optimizations({})
        report = {
            "period": period.value,
            "generated_at": self._ctx.now().isoformat(),
            "summary": summary,
            "timeline": self._ledger.cost_timeline(days=int(data.get("days", 7))),
            "anomalies": anomalies,
            "optimizations": optimizations,
            "insights": self.insights(summary, anomalies, optimizations),
        }
        logger.info(
            "cost_agent.report_generated",
            period=period.value,
            total_cost=sum(item["total_cost"] for item in summary),
        )
        return report

    @staticmethod
    def insights(
        summary: List[Dict[str, Any]],
        anomalies: Dict[str, Any],
        optimizations: List[Dict[str, Any]],
    ) -> List[Dict[str, str]]:
        insights = []
        total_cost = sum(item["total_cost"] for item in summary)
        total_requests = sum(item["request_count"] for item in summary)
        per_request = total_cost / total_requests if total_requests else 0.0
        if per_request > 1.0:
            insights.append(
                {
                    "type": "high_cost_per_request",
                    "message": f"Average cost per request is ${per_request:.2f}, "
                    "consider optimizing model selection",
                    "severity": "medium",
                }
            )
        spikes = len(anomalies["anomalies"])
        if spikes:
            insights.append(
                {
                    "type": "anomalies_detected",
                    "message": f"{spikes} cost anomalies detected in the last 24 hours",
                    "severity": "high" if spikes > 3 else "medium",
                }
            )
        if optimizations:
            savings = sum(item["savings"] for item in optimizations)
            insights.append(
                {
                    "type": "optimization_opportunity",
                    "message": f"{len(optimizations)} optimization opportunities could save "
                    f"${savings:.2f}/week",
                    "severity": "high" if savings > 10 else "low",
                }
            )
        return insights

    def _alert(
        self, alert_type: str, severity: str, message: str, scope_id: Any, details: Dict[str, Any]
    ) -> None:
        self._ctx.store.create_alert(
            Alert(
                id=f"alert_{uuid.uuid4().hex}",
                alert_type=alert_type,
                severity=severity,
                message=message,
                scope_id=scope_id,
                details=details,
                created_at=self._ctx.now(),
            )
        )
        logger.warning(f"cost_agent.{alert_type}", scope_id=scope_id)

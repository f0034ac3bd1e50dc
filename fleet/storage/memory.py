"""Process-local store used by default and in tests."""
from __future__ import annotations

import copy
import itertools
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, TypeVar

from fleet.core.errors import RecordNotFound, TaskNotFound
from fleet.core.models import (
    Alert,
    Budget,
    CostRecord,
    FleetSession,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from fleet.storage.base import Store

T = TypeVar("T")


def _detach(value: T) -> T:
    return copy.deepcopy(value)


class InMemoryStore(Store):
    """Dictionary-backed store. Reads and writes copy, so callers never alias rows."""

    def __init__(self) -> None:
        self._tasks: Dict[str, Task] = {}
        self._workers: Dict[str, Worker] = {}
        self._budgets: Dict[str, Budget] = {}
        self._costs: List[CostRecord] = []
        self._alerts: List[Alert] = []
        self._sessions: Dict[str, FleetSession] = {}
        self._seq = itertools.count(1)

    def create_task(self, task: Task) -> Task:
        row = replace(_detach(task), seq=next(self._seq))
        self._tasks[row.id] = row
        return _detach(row)

    def get_task(self, task_id: str) -> Optional[Task]:
        row = self._tasks.get(task_id)
        return _detach(row) if row else None

    def update_task(self, task_id: str, **changes: Any) -> Task:
        row = self._tasks.get(task_id)
        if row is None:
            raise TaskNotFound(task_id)
        row = replace(row, **_detach(changes))
        self._tasks[task_id] = row
        return _detach(row)

    def delete_task(self, task_id: str) -> bool:
        return self._tasks.pop(task_id, None) is not None

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        agent_type: Optional[str] = None,
    ) -> List[Task]:
        return [
            _detach(task)
            for task in sorted(self._tasks.values(), key=lambda t: t.seq)
            if (status is None or task.status == status)
            and (agent_type is None or task.agent_type == agent_type)
        ]

    def pending_tasks(self, limit: int) -> List[Task]:
        queued = [t for t in self._tasks.values() if t.status == TaskStatus.QUEUED]
        queued.sort(key=lambda t: (-t.priority, t.created_at, t.seq))
        return [_detach(task) for task in queued[: max(limit, 0)]]

    def failed_tasks(self, limit: int, agent_type: Optional[str] = None) -> List[Task]:
        failed = [
            t
            for t in self._tasks.values()
            if t.status == TaskStatus.FAILED and (agent_type is None or t.agent_type == agent_type)
        ]
        failed.sort(key=lambda t: (t.completed_at or t.created_at, t.seq), reverse=True)
        return [_detach(task) for task in failed[: max(limit, 0)]]

    def create_worker(self, worker: Worker) -> Worker:
        self._workers[worker.id] = _detach(worker)
        return _detach(worker)

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        row = self._workers.get(worker_id)
        return _detach(row) if row else None

    def update_worker(self, worker_id: str, **changes: Any) -> Worker:
        row = self._workers.get(worker_id)
        if row is None:
            raise RecordNotFound(f"Worker not found: {worker_id}")
        row = replace(row, **_detach(changes))
        self._workers[worker_id] = row
        return _detach(row)

    def list_workers(self, status: Optional[WorkerStatus] = None) -> List[Worker]:
        return [
            _detach(worker)
            for worker in self._workers.values()
            if status is None or worker.status == status
        ]

    def get_budget(self, scope_id: str) -> Optional[Budget]:
        row = self._budgets.get(scope_id)
        return _detach(row) if row else None

    def save_budget(self, budget: Budget) -> Budget:
        self._budgets[budget.scope_id] = _detach(budget)
        return _detach(budget)

    def list_budgets(self) -> List[Budget]:
        return [_detach(budget) for budget in self._budgets.values()]

    def _update_budget(self, scope_id: str, **changes: Any) -> Budget:
        row = self._budgets.get(scope_id)
        if row is None:
            raise RecordNotFound(f"Budget not found: {scope_id}")
        row = replace(row, **changes)
        self._budgets[scope_id] = row
        return _detach(row)

    def increment_budget_spent(self, scope_id: str, amount: float) -> Budget:
        row = self._budgets.get(scope_id)
        if row is None:
            raise RecordNotFound(f"Budget not found: {scope_id}")
        return self._update_budget(scope_id, current_spent=row.current_spent + amount)

    def reset_budget_period(self, scope_id: str, period_start: datetime) -> Budget:
        return self._update_budget(
            scope_id, current_spent=0.0, alert_sent=False, period_start=period_start
        )

    def mark_budget_alert_sent(self, scope_id: str) -> Budget:
        return self._update_budget(scope_id, alert_sent=True)

    def create_cost_record(self, record: CostRecord) -> CostRecord:
        self._costs.append(_detach(record))
        return _detach(record)

    def list_cost_records(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        worker_id: Optional[str] = None,
    ) -> List[CostRecord]:
        records = [
            record
            for record in self._costs
            if (since is None or record.timestamp >= since)
            and (until is None or record.timestamp < until)
            and (worker_id is None or record.worker_id == worker_id)
        ]
        records.sort(key=lambda r: r.timestamp)
        return [_detach(record) for record in records]

    def create_alert(self, alert: Alert) -> Alert:
        self._alerts.append(_detach(alert))
        return _detach(alert)

    def list_alerts(self, alert_type: Optional[str] = None) -> List[Alert]:
        return [
            _detach(alert)
            for alert in self._alerts
            if alert_type is None or alert.alert_type == alert_type
        ]

    def create_session(self, session: FleetSession) -> FleetSession:
        self._sessions[session.id] = _detach(session)
        return _detach(session)

    def get_session(self, session_id: str) -> Optional[FleetSession]:
        row = self._sessions.get(session_id)
        return _detach(row) if row else None

    def update_session(self, session_id: str, **changes: Any) -> FleetSession:
        row = self._sessions.get(session_id)
        if row is None:
            raise RecordNotFound(f"Session not found: {session_id}")
        row = replace(row, **changes)
        self._sessions[session_id] = row
        return _detach(row)

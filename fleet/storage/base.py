"""Persistence contract consumed by the scheduler, supervisor and ledger."""
from __future__ import annotations

import abc
from datetime import datetime
from typing import Any, List, Optional

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


class Store(abc.ABC):
    """Authoritative state for tasks, workers, budgets, costs and alerts.

    Calls are synchronous so that assignment bookkeeping inside one poll tick
    runs without yielding to the event loop. Returned objects are detached
    copies; mutate state only through the ``update_*`` methods.
    """

    # Tasks

    @abc.abstractmethod
    def create_task(self, task: Task) -> Task:
        """Persist a new task and assign its insertion sequence."""

    @abc.abstractmethod
    def get_task(self, task_id: str) -> Optional[Task]: ...

    @abc.abstractmethod
    def update_task(self, task_id: str, **changes: Any) -> Task:
        """Apply field changes; raises ``TaskNotFound`` for unknown ids."""

    @abc.abstractmethod
    def delete_task(self, task_id: str) -> bool: ...

    @abc.abstractmethod
    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        agent_type: Optional[str] = None,
    ) -> List[Task]: ...

    @abc.abstractmethod
    def pending_tasks(self, limit: int) -> List[Task]:
        """Queued tasks by priority desc, then created_at asc, then seq asc."""

    @abc.abstractmethod
    def failed_tasks(self, limit: int, agent_type: Optional[str] = None) -> List[Task]:
        """Failed tasks, most recently finished first."""

    # Workers

    @abc.abstractmethod
    def create_worker(self, worker: Worker) -> Worker: ...

    @abc.abstractmethod
    def get_worker(self, worker_id: str) -> Optional[Worker]: ...

    @abc.abstractmethod
    def update_worker(self, worker_id: str, **changes: Any) -> Worker: ...

    @abc.abstractmethod
    def list_workers(self, status: Optional[WorkerStatus] = None) -> List[Worker]: ...

    # Budgets

    @abc.abstractmethod
    def get_budget(self, scope_id: str) -> Optional[Budget]: ...

    @abc.abstractmethod
    def save_budget(self, budget: Budget) -> Budget:
        """Insert or replace the budget for ``budget.scope_id``."""

    @abc.abstractmethod
    def list_budgets(self) -> List[Budget]: ...

    @abc.abstractmethod
    def increment_budget_spent(self, scope_id: str, amount: float) -> Budget:
        """Atomically add ``amount`` to the scope's current spend."""

    @abc.abstractmethod
    def reset_budget_period(self, scope_id: str, period_start: datetime) -> Budget:
        """Zero the spend, clear ``alert_sent`` and move the period start."""

    @abc.abstractmethod
    def mark_budget_alert_sent(self, scope_id: str) -> Budget: ...

    # Cost records

    @abc.abstractmethod
    def create_cost_record(self, record: CostRecord) -> CostRecord: ...

    @abc.abstractmethod
    def list_cost_records(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        worker_id: Optional[str] = None,
    ) -> List[CostRecord]:
        """Records with ``since <= timestamp < until``, oldest first."""

    # Alerts

    @abc.abstractmethod
    def create_alert(self, alert: Alert) -> Alert: ...

    @abc.abstractmethod
    def list_alerts(self, alert_type: Optional[str] = None) -> List[Alert]: ...

    # Sessions

    @abc.abstractmethod
    def create_session(self, session: FleetSession) -> FleetSession: ...

    @abc.abstractmethod
    def get_session(self, session_id: str) -> Optional[FleetSession]: ...

    @abc.abstractmethod
    def update_session(self, session_id: str, **changes: Any) -> FleetSession: ...

    def close(self) -> None:
        """Release underlying resources."""
        return None

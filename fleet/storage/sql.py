"""Relational store backed by SQLModel (SQLite by default)."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from fleet.core.errors import RecordNotFound, TaskNotFound
from fleet.core.models import (
    Alert,
    Budget,
    BudgetPeriod,
    CostRecord,
    FleetSession,
    ScopeKind,
    Task,
    TaskStatus,
    Worker,
    WorkerStatus,
)
from fleet.storage.base import Store
from fleet.storage.tables import AlertRow, BudgetRow, CostRow, SessionRow, TaskRow, WorkerRow

logger = structlog.get_logger(__name__)


class SqlStore(Store):
    """Store facade backed by SQLModel.

    Datetimes are written as naive UTC and returned timezone-aware.
    """

    def __init__(self, database_url: str = "sqlite://") -> None:
        self.database_url = database_url
        kwargs: Dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(database_url, **kwargs)
        self.init_schema()

    def init_schema(self) -> None:
        SQLModel.metadata.create_all(self.engine)

    def close(self) -> None:
        """Close underlying DB resources."""
        self.engine.dispose()

    # Tasks

    def create_task(self, task: Task) -> Task:
        with Session(self.engine) as session:
            current = session.exec(select(func.max(TaskRow.seq))).one()
            row = TaskRow(
                id=task.id,
                seq=(current or 0) + 1,
                agent_type=task.agent_type,
                task_type=task.task_type,
                payload=task.payload,
                priority=task.priority,
                status=_db_value(task.status),
                retry_count=task.retry_count,
                created_at=_to_db_datetime(task.created_at),
                started_at=_to_db_datetime(task.started_at),
                completed_at=_to_db_datetime(task.completed_at),
                worker_id=task.worker_id,
                result=task.result,
                error_message=task.error_message,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def get_task(self, task_id: str) -> Optional[Task]:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            return _to_task(row) if row else None

    def update_task(self, task_id: str, **changes: Any) -> Task:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                raise TaskNotFound(task_id)
            _apply(row, changes)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_task(row)

    def delete_task(self, task_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(TaskRow, task_id)
            if row is None:
                return False
            session.delete(row)
            session.commit()
            return True

    def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        agent_type: Optional[str] = None,
    ) -> List[Task]:
        statement = select(TaskRow).order_by(col(TaskRow.seq).asc())
        if status is not None:
            statement = statement.where(TaskRow.status == _db_value(status))
        if agent_type is not None:
            statement = statement.where(TaskRow.agent_type == agent_type)
        with Session(self.engine) as session:
            return [_to_task(row) for row in session.exec(statement).all()]

    def pending_tasks(self, limit: int) -> List[Task]:
        statement = (
            select(TaskRow)
            .where(TaskRow.status == TaskStatus.QUEUED.value)
            .order_by(
                col(TaskRow.priority).desc(),
                col(TaskRow.created_at).asc(),
                col(TaskRow.seq).asc(),
            )
            .limit(max(limit, 0))
        )
        with Session(self.engine) as session:
            return [_to_task(row) for row in session.exec(statement).all()]

    def failed_tasks(self, limit: int, agent_type: Optional[str] = None) -> List[Task]:
        statement = select(TaskRow).where(TaskRow.status == TaskStatus.FAILED.value)
        if agent_type is not None:
            statement = statement.where(TaskRow.agent_type == agent_type)
        statement = statement.order_by(
            col(TaskRow.completed_at).desc(), col(TaskRow.seq).desc()
        ).limit(max(limit, 0))
        with Session(self.engine) as session:
            return [_to_task(row) for row in session.exec(statement).all()]

    # Workers

    def create_worker(self, worker: Worker) -> Worker:
        with Session(self.engine) as session:
            row = WorkerRow(
                id=worker.id,
                agent_type=worker.agent_type,
                model=worker.model,
                provider=worker.provider,
                pool=worker.pool,
                status=_db_value(worker.status),
                current_task_id=worker.current_task_id,
                spawned_at=_to_db_datetime(worker.spawned_at),
                last_heartbeat_at=_to_db_datetime(worker.last_heartbeat_at),
                terminated_at=_to_db_datetime(worker.terminated_at),
                tasks_completed=worker.tasks_completed,
                tasks_failed=worker.tasks_failed,
                tokens_used=worker.tokens_used,
                total_cost=worker.total_cost,
                metadata_json=worker.metadata,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker(row)

    def get_worker(self, worker_id: str) -> Optional[Worker]:
        with Session(self.engine) as session:
            row = session.get(WorkerRow, worker_id)
            return _to_worker(row) if row else None

    def update_worker(self, worker_id: str, **changes: Any) -> Worker:
        if "metadata" in changes:
            changes["metadata_json"] = changes.pop("metadata")
        with Session(self.engine) as session:
            row = session.get(WorkerRow, worker_id)
            if row is None:
                raise RecordNotFound(f"Worker not found: {worker_id}")
            _apply(row, changes)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_worker(row)

    def list_workers(self, status: Optional[WorkerStatus] = None) -> List[Worker]:
        statement = select(WorkerRow)
        if status is not None:
            statement = statement.where(WorkerRow.status == _db_value(status))
        with Session(self.engine) as session:
            return [_to_worker(row) for row in session.exec(statement).all()]

    # Budgets

    def get_budget(self, scope_id: str) -> Optional[Budget]:
        with Session(self.engine) as session:
            row = session.get(BudgetRow, scope_id)
            return _to_budget(row) if row else None

    def save_budget(self, budget: Budget) -> Budget:
        with Session(self.engine) as session:
            row = session.get(BudgetRow, budget.scope_id) or BudgetRow(
                scope_id=budget.scope_id,
                scope_kind=_db_value(budget.scope_kind),
                limit=budget.limit,
                period=_db_value(budget.period),
                period_start=_to_db_datetime(budget.period_start),
            )
            _apply(
                row,
                {
                    "scope_kind": budget.scope_kind,
                    "limit": budget.limit,
                    "period": budget.period,
                    "current_spent": budget.current_spent,
                    "period_start": budget.period_start,
                    "alert_threshold": budget.alert_threshold,
                    "alert_sent": budget.alert_sent,
                },
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_budget(row)

    def list_budgets(self) -> List[Budget]:
        with Session(self.engine) as session:
            return [_to_budget(row) for row in session.exec(select(BudgetRow)).all()]

    def increment_budget_spent(self, scope_id: str, amount: float) -> Budget:
        with Session(self.engine) as session:
            result = session.execute(
                sa_update(BudgetRow)
                .where(col(BudgetRow.scope_id) == scope_id)
                .values(current_spent=BudgetRow.current_spent + amount),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RecordNotFound(f"Budget not found: {scope_id}")
            session.commit()
            row = session.get(BudgetRow, scope_id)
            return _to_budget(row)

    def reset_budget_period(self, scope_id: str, period_start: datetime) -> Budget:
        return self._update_budget(
            scope_id, current_spent=0.0, alert_sent=False, period_start=period_start
        )

    def mark_budget_alert_sent(self, scope_id: str) -> Budget:
        return self._update_budget(scope_id, alert_sent=True)

    def _update_budget(self, scope_id: str, **changes: Any) -> Budget:
        with Session(self.engine) as session:
            row = session.get(BudgetRow, scope_id)
            if row is None:
                raise RecordNotFound(f"Budget not found: {scope_id}")
            _apply(row, changes)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_budget(row)

    # Cost records

    def create_cost_record(self, record: CostRecord) -> CostRecord:
        with Session(self.engine) as session:
            session.add(
                CostRow(
                    id=record.id,
                    worker_id=record.worker_id,
                    task_id=record.task_id,
                    provider=record.provider,
                    model=record.model,
                    input_tokens=record.input_tokens,
                    output_tokens=record.output_tokens,
                    cost=record.cost,
                    timestamp=_to_db_datetime(record.timestamp),
                ),
            )
            session.commit()
        return record

    def list_cost_records(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        worker_id: Optional[str] = None,
    ) -> List[CostRecord]:
        statement = select(CostRow).order_by(col(CostRow.timestamp).asc())
        if since is not None:
            statement = statement.where(col(CostRow.timestamp) >= _to_db_datetime(since))
        if until is not None:
            statement = statement.where(col(CostRow.timestamp) < _to_db_datetime(until))
        if worker_id is not None:
            statement = statement.where(CostRow.worker_id == worker_id)
        with Session(self.engine) as session:
            return [_to_cost(row) for row in session.exec(statement).all()]

    # Alerts

    def create_alert(self, alert: Alert) -> Alert:
        with Session(self.engine) as session:
            session.add(
                AlertRow(
                    id=alert.id,
                    alert_type=alert.alert_type,
                    severity=alert.severity,
                    message=alert.message,
                    scope_id=alert.scope_id,
                    details=alert.details,
                    created_at=_to_db_datetime(alert.created_at),
                ),
            )
            session.commit()
        return alert

    def list_alerts(self, alert_type: Optional[str] = None) -> List[Alert]:
        statement = select(AlertRow).order_by(col(AlertRow.created_at).asc())
        if alert_type is not None:
            statement = statement.where(AlertRow.alert_type == alert_type)
        with Session(self.engine) as session:
            return [
                Alert(
                    id=row.id,
                    alert_type=row.alert_type,
                    severity=row.severity,
                    message=row.message,
                    scope_id=row.scope_id,
                    details=dict(row.details or {}),
                    created_at=_to_utc(row.created_at),
                )
                for row in session.exec(statement).all()
            ]

    # Sessions

    def create_session(self, session_record: FleetSession) -> FleetSession:
        with Session(self.engine) as session:
            row = SessionRow(
                id=session_record.id,
                trigger=session_record.trigger,
                started_at=_to_db_datetime(session_record.started_at),
                ended_at=_to_db_datetime(session_record.ended_at),
                agents_spawned=session_record.agents_spawned,
                tasks_completed=session_record.tasks_completed,
                total_cost=session_record.total_cost,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)

    def get_session(self, session_id: str) -> Optional[FleetSession]:
        with Session(self.engine) as session:
            row = session.get(SessionRow, session_id)
            return _to_session(row) if row else None

    def update_session(self, session_id: str, **changes: Any) -> FleetSession:
        with Session(self.engine) as session:
            row = session.get(SessionRow, session_id)
            if row is None:
                raise RecordNotFound(f"Session not found: {session_id}")
            _apply(row, changes)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_session(row)


def _db_value(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return _to_db_datetime(value)
    return value


def _apply(row: Any, changes: Dict[str, Any]) -> None:
    for name, value in changes.items():
        if not hasattr(row, name):
            raise TypeError(f"{type(row).__name__} has no field {name!r}")
        setattr(row, name, _db_value(value))


def _to_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _to_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_task(row: TaskRow) -> Task:
    return Task(
        id=row.id,
        agent_type=row.agent_type,
        task_type=row.task_type,
        payload=dict(row.payload or {}),
        priority=row.priority,
        status=TaskStatus(row.status),
        retry_count=row.retry_count,
        created_at=_to_utc(row.created_at),
        started_at=_to_utc(row.started_at),
        completed_at=_to_utc(row.completed_at),
        worker_id=row.worker_id,
        result=row.result,
        error_message=row.error_message,
        seq=row.seq,
    )


def _to_worker(row: WorkerRow) -> Worker:
    return Worker(
        id=row.id,
        agent_type=row.agent_type,
        model=row.model,
        provider=row.provider,
        pool=row.pool,
        status=WorkerStatus(row.status),
        current_task_id=row.current_task_id,
        spawned_at=_to_utc(row.spawned_at),
        last_heartbeat_at=_to_utc(row.last_heartbeat_at),
        terminated_at=_to_utc(row.terminated_at),
        tasks_completed=row.tasks_completed,
        tasks_failed=row.tasks_failed,
        tokens_used=row.tokens_used,
        total_cost=row.total_cost,
        metadata=dict(row.metadata_json or {}),
    )


def _to_budget(row: BudgetRow) -> Budget:
    return Budget(
        scope_id=row.scope_id,
        scope_kind=ScopeKind(row.scope_kind),
        limit=row.limit,
        period=BudgetPeriod(row.period),
        current_spent=row.current_spent,
        period_start=_to_utc(row.period_start),
        alert_threshold=row.alert_threshold,
        alert_sent=bool(row.alert_sent),
    )


def _to_cost(row: CostRow) -> CostRecord:
    return CostRecord(
        id=row.id,
        worker_id=row.worker_id,
        task_id=row.task_id,
        provider=row.provider,
        model=row.model,
        input_tokens=row.input_tokens,
        output_tokens=row.output_tokens,
        cost=row.cost,
        timestamp=_to_utc(row.timestamp),
    )


def _to_session(row: SessionRow) -> FleetSession:
    return FleetSession(
        id=row.id,
        trigger=row.trigger,
        started_at=_to_utc(row.started_at),
        ended_at=_to_utc(row.ended_at),
        agents_spawned=row.agents_spawned,
        tasks_completed=row.tasks_completed,
        total_cost=row.total_cost,
    )

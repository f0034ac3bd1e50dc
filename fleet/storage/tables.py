"""SQLModel ORM tables for the SQL-backed store."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Column, DateTime, Index
from sqlmodel import Field, SQLModel


class TaskRow(SQLModel, table=True):
    __tablename__ = "agent_tasks"  # type: ignore[assignment]
    __table_args__ = (Index("idx_agent_tasks_queue", "status", "priority", "created_at"),)

    id: str = Field(primary_key=True)
    seq: int = Field(index=True)
    agent_type: str = Field(index=True)
    task_type: str
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    priority: int = 5
    status: str = Field(index=True)
    retry_count: int = 0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    started_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    completed_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    worker_id: Optional[str] = Field(default=None, index=True)
    result: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = None


class WorkerRow(SQLModel, table=True):
    __tablename__ = "agents"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    agent_type: str = Field(index=True)
    model: str
    provider: str
    pool: str = "default"
    status: str = Field(index=True)
    current_task_id: Optional[str] = None
    spawned_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    last_heartbeat_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    terminated_at: Optional[datetime] = Field(
        default=None, sa_column=Column(DateTime(timezone=True))
    )
    tasks_completed: int = 0
    tasks_failed: int = 0
    tokens_used: int = 0
    total_cost: float = 0.0
    metadata_json: Dict[str, Any] = Field(
        default_factory=dict, sa_column=Column(JSON, nullable=False)
    )


class BudgetRow(SQLModel, table=True):
    __tablename__ = "agent_budgets"  # type: ignore[assignment]

    scope_id: str = Field(primary_key=True)
    scope_kind: str
    limit: float
    period: str
    current_spent: float = 0.0
    period_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    alert_threshold: float = 0.8
    alert_sent: bool = False


class CostRow(SQLModel, table=True):
    __tablename__ = "agent_costs"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    worker_id: str = Field(index=True)
    task_id: Optional[str] = None
    provider: str
    model: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float
    timestamp: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True)
    )


class AlertRow(SQLModel, table=True):
    __tablename__ = "observability_alerts"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    alert_type: str = Field(index=True)
    severity: str
    message: str
    scope_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionRow(SQLModel, table=True):
    __tablename__ = "agent_sessions"  # type: ignore[assignment]

    id: str = Field(primary_key=True)
    trigger: str = "manual"
    started_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    ended_at: Optional[datetime] = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    agents_spawned: int = 0
    tasks_completed: int = 0
    total_cost: float = 0.0

"""Core data models shared across fleet components."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

SCHEDULER_ADDRESS = "scheduler"


def utc_now() -> datetime:
    """Current UTC timestamp."""
    return datetime.now(tz=timezone.utc)


class TaskStatus(str, Enum):
    """Lifecycle states for a queued task."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class WorkerStatus(str, Enum):
    """Lifecycle states for a worker managed by the supervisor."""

    IDLE = "idle"
    BUSY = "busy"
    TERMINATED = "terminated"


class BudgetPeriod(str, Enum):
    """Rolling windows a budget can be measured over."""

    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"

    @property
    def seconds(self) -> int:
        return _PERIOD_SECONDS[self]


_PERIOD_SECONDS = {
    BudgetPeriod.HOURLY: 3_600,
    BudgetPeriod.DAILY: 86_400,
    BudgetPeriod.WEEKLY: 604_800,
    BudgetPeriod.MONTHLY: 2_592_000,
}


class ScopeKind(str, Enum):
    WORKER = "worker"
    POOL = "pool"


class OutcomeKind(str, Enum):
    """How a single execution attempt ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    DENIED = "denied"
    MISCONFIGURED = "misconfigured"
    REJECTED = "rejected"


@dataclass(slots=True)
class AgentConfig:
    """Static configuration used by the supervisor when spawning a worker."""

    agent_type: str
    model: str
    provider: str = "anthropic"
    pool: str = "default"
    auto_start: bool = True
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Task:
    """Unit of work routed to a worker of matching agent type."""

    id: str
    agent_type: str
    task_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    status: TaskStatus = TaskStatus.QUEUED
    retry_count: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    worker_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    seq: int = 0


@dataclass(slots=True)
class Worker:
    """Persisted descriptor for each worker spawned by the supervisor."""

    id: str
    agent_type: str
    model: str
    provider: str
    pool: str = "default"
    status: WorkerStatus = WorkerStatus.IDLE
    current_task_id: Optional[str] = None
    spawned_at: datetime = field(default_factory=utc_now)
    last_heartbeat_at: Optional[datetime] = None
    terminated_at: Optional[datetime] = None
    tasks_completed: int = 0
    tasks_failed: int = 0
    tokens_used: int = 0
    total_cost: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Budget:
    """Spend limit for one scope over a rolling period."""

    scope_id: str
    limit: float
    period: BudgetPeriod = BudgetPeriod.DAILY
    scope_kind: ScopeKind = ScopeKind.WORKER
    current_spent: float = 0.0
    period_start: datetime = field(default_factory=utc_now)
    alert_threshold: float = 0.8
    alert_sent: bool = False

    @property
    def remaining(self) -> float:
        return self.limit - self.current_spent


@dataclass(slots=True)
class CostRecord:
    id: str
    worker_id: str
    provider: str
    model: str
    cost: float
    task_id: Optional[str] = None
    input_tokens: int = 0
    output_tokens: int = 0
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class Alert:
    id: str
    alert_type: str
    severity: str
    message: str
    scope_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)


@dataclass(slots=True)
class FleetSession:
    """One start/stop cycle of the fleet."""

    id: str
    trigger: str = "manual"
    started_at: datetime = field(default_factory=utc_now)
    ended_at: Optional[datetime] = None
    agents_spawned: int = 0
    tasks_completed: int = 0
    total_cost: float = 0.0


@dataclass(slots=True)
class TaskResult:
    """Value returned by pluggable task logic."""

    content: Any
    input_tokens: int = 0
    output_tokens: int = 0
    cost: Optional[float] = None
    model: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cost": self.cost,
            "model": self.model,
        }


@dataclass(slots=True)
class TaskOutcome:
    """Result of one execution attempt, posted back to the scheduler."""

    task_id: str
    worker_id: str
    kind: OutcomeKind
    result: Optional[TaskResult] = None
    error: Optional[str] = None
    cost: float = 0.0
    dispatch_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind is OutcomeKind.COMPLETED

    @property
    def retryable(self) -> bool:
        return self.kind is OutcomeKind.FAILED


@dataclass(slots=True)
class TaskAssignment:
    """Dispatch message sent from the scheduler to a worker mailbox."""

    task: Task
    dispatch_id: str


@dataclass(slots=True)
class WorkerTerminated:
    """Notice posted to the scheduler after a worker's lifecycle ends."""

    worker_id: str


@dataclass(slots=True)
class Message:
    """Envelope exchanged over the fleet message bus."""

    sender_id: str
    recipient_id: Optional[str]
    body: Any
    correlation_id: Optional[str] = None

"""Store contract shared by the in-memory and SQL backends."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Iterator

import pytest

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
from fleet.storage.memory import InMemoryStore
from fleet.storage.sql import SqlStore

NOW = datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path) -> Iterator[Store]:
    if request.param == "memory":
        backend: Store = InMemoryStore()
    else:
        backend = SqlStore(f"sqlite:///{tmp_path / 'fleet.db'}")
    yield backend
    backend.close()


def make_task(task_id: str, priority: int = 5, minutes: int = 0, **fields) -> Task:
    return Task(
        id=task_id,
        agent_type=fields.pop("agent_type", "echo"),
        task_type="say",
        payload={"content": task_id},
        priority=priority,
        created_at=NOW + timedelta(minutes=minutes),
        **fields,
    )


def test_task_round_trip_and_update(store: Store) -> None:
    created = store.create_task(make_task("task_1"))
    assert created.seq >= 1
    assert created.status is TaskStatus.QUEUED

    updated = store.update_task(
        "task_1",
        status=TaskStatus.COMPLETED,
        result={"content": "done"},
        completed_at=NOW + timedelta(seconds=5),
    )

    fetched = store.get_task("task_1")
    assert fetched == updated
    assert fetched.status is TaskStatus.COMPLETED
    assert fetched.result == {"content": "done"}
    assert fetched.payload == {"content": "task_1"}
    assert fetched.created_at == NOW
    assert fetched.completed_at.tzinfo is not None
    assert store.get_task("task_missing") is None
    with pytest.raises(TaskNotFound):
        store.update_task("task_missing", status=TaskStatus.FAILED)


def test_pending_tasks_order(store: Store) -> None:
    store.create_task(make_task("low", priority=1, minutes=0))
    store.create_task(make_task("high_late", priority=9, minutes=2))
    store.create_task(make_task("high_early", priority=9, minutes=1))
    store.create_task(make_task("mid_a", priority=5, minutes=3))
    store.create_task(make_task("mid_b", priority=5, minutes=3))
    store.create_task(make_task("running", priority=10, status=TaskStatus.PROCESSING))

    assert [t.id for t in store.pending_tasks(10)] == [
        "high_early",
        "high_late",
        "mid_a",
        "mid_b",
        "low",
    ]
    assert [t.id for t in store.pending_tasks(2)] == ["high_early", "high_late"]
    assert store.pending_tasks(0) == []


def test_failed_tasks_newest_first_with_filter(store: Store) -> None:
    for index, agent_type in enumerate(("echo", "tooling", "echo")):
        store.create_task(
            make_task(
                f"task_{index}",
                agent_type=agent_type,
                status=TaskStatus.FAILED,
                completed_at=NOW + timedelta(minutes=index),
            )
        )

    assert [t.id for t in store.failed_tasks(10)] == ["task_2", "task_1", "task_0"]
    assert [t.id for t in store.failed_tasks(10, "echo")] == ["task_2", "task_0"]
    assert [t.id for t in store.failed_tasks(1)] == ["task_2"]


def test_list_and_delete_tasks(store: Store) -> None:
    store.create_task(make_task("a"))
    store.create_task(make_task("b", agent_type="tooling", status=TaskStatus.FAILED))

    assert [t.id for t in store.list_tasks()] == ["a", "b"]
    assert [t.id for t in store.list_tasks(status=TaskStatus.FAILED)] == ["b"]
    assert [t.id for t in store.list_tasks(agent_type="echo")] == ["a"]
    assert store.delete_task("a") is True
    assert store.delete_task("a") is False


def test_worker_round_trip(store: Store) -> None:
    store.create_worker(
        Worker(
            id="agent_1",
            agent_type="code_review",
            model="claude-sonnet-4-20250514",
            provider="anthropic",
            spawned_at=NOW,
            metadata={"temperature": 0.2},
        )
    )

    store.update_worker(
        "agent_1", status=WorkerStatus.BUSY, current_task_id="task_1", tasks_completed=2
    )

    worker = store.get_worker("agent_1")
    assert worker.status is WorkerStatus.BUSY
    assert worker.current_task_id == "task_1"
    assert worker.tasks_completed == 2
    assert worker.metadata == {"temperature": 0.2}
    assert worker.spawned_at == NOW
    assert [w.id for w in store.list_workers(WorkerStatus.BUSY)] == ["agent_1"]
    assert store.list_workers(WorkerStatus.TERMINATED) == []
    with pytest.raises(RecordNotFound):
        store.update_worker("agent_missing", status=WorkerStatus.IDLE)


def test_budget_spend_and_period_reset(store: Store) -> None:
    store.save_budget(
        Budget(
            scope_id="default",
            limit=5.0,
            period=BudgetPeriod.WEEKLY,
            scope_kind=ScopeKind.POOL,
            period_start=NOW,
        )
    )

    store.increment_budget_spent("default", 1.25)
    store.increment_budget_spent("default", 0.75)
    store.mark_budget_alert_sent("default")

    budget = store.get_budget("default")
    assert budget.current_spent == pytest.approx(2.0)
    assert budget.alert_sent is True
    assert budget.period is BudgetPeriod.WEEKLY
    assert budget.scope_kind is ScopeKind.POOL

    reset = store.reset_budget_period("default", NOW + timedelta(days=7))
    assert reset.current_spent == 0.0
    assert reset.alert_sent is False
    assert reset.period_start == NOW + timedelta(days=7)
    assert [b.scope_id for b in store.list_budgets()] == ["default"]
    with pytest.raises(RecordNotFound):
        store.increment_budget_spent("missing", 1.0)


def test_cost_records_filter_by_window_and_worker(store: Store) -> None:
    for index, worker_id in enumerate(("agent_1", "agent_2", "agent_1")):
        store.create_cost_record(
            CostRecord(
                id=f"cost_{index}",
                worker_id=worker_id,
                provider="anthropic",
                model="claude-3-5-haiku-20241022",
                cost=0.1 * (index + 1),
                timestamp=NOW + timedelta(hours=index),
            )
        )

    window = store.list_cost_records(since=NOW + timedelta(hours=1), until=NOW + timedelta(hours=2))
    assert [r.id for r in window] == ["cost_1"]
    assert [r.id for r in store.list_cost_records(worker_id="agent_1")] == ["cost_0", "cost_2"]
    assert store.list_cost_records()[0].timestamp == NOW


def test_alerts_and_sessions(store: Store) -> None:
    store.create_alert(
        Alert(id="alert_1", alert_type="budget_warning", severity="high", message="m", created_at=NOW)
    )
    store.create_alert(
        Alert(id="alert_2", alert_type="agent_stale", severity="medium", message="m", created_at=NOW)
    )
    assert [a.id for a in store.list_alerts("agent_stale")] == ["alert_2"]
    assert len(store.list_alerts()) == 2

    store.create_session(FleetSession(id="session_1", started_at=NOW))
    store.update_session("session_1", ended_at=NOW + timedelta(hours=1), agents_spawned=3)
    session = store.get_session("session_1")
    assert session.agents_spawned == 3
    assert session.ended_at == NOW + timedelta(hours=1)

"""Supervisor lifecycle, health sweep and reporting."""
from __future__ import annotations

import pytest

from conftest import ManualClock, make_runtime, make_settings
from fleet.agents.base import WorkerAgent
from fleet.agents.llm_agent import LLMAgent
from fleet.agents.registry import Unimplemented, default_registry
from fleet.core.context import FleetContext
from fleet.core.errors import RecordNotFound
from fleet.core.models import WorkerStatus
from fleet.orchestration.supervisor import FleetSupervisor
from fleet.services.budget import BudgetLedger


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio
async def test_start_spawns_auto_start_types_and_closes_session(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    supervisor = runtime.supervisor

    status = await supervisor.start(trigger="test")

    spawned = {agent["agent_type"] for agent in status["agents"]}
    assert spawned == {
        "code_review",
        "documentation",
        "repo_manager",
        "tooling",
        "cost_observability",
        "visualization",
    }
    assert (await supervisor.start())["session_id"] == status["session_id"]
    session = runtime.ctx.store.get_session(supervisor.session_id)
    assert session.agents_spawned == 6
    assert session.trigger == "test"

    clock.advance(minutes=5)
    await supervisor.stop()

    session = runtime.ctx.store.get_session(supervisor.session_id)
    assert session.ended_at == clock()
    assert supervisor.list_agents() == []
    assert all(
        worker.status is WorkerStatus.TERMINATED for worker in runtime.ctx.store.list_workers()
    )


@pytest.mark.anyio
async def test_spawn_unimplemented_type_is_skipped(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)

    result = await runtime.supervisor.spawn_agent("governance")

    assert isinstance(result, Unimplemented)
    assert "governance" in result.reason
    assert runtime.supervisor.list_agents() == []
    assert runtime.ctx.store.list_workers() == []


@pytest.mark.anyio
async def test_spawn_applies_config_and_overrides(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    supervisor = runtime.supervisor

    agent = await supervisor.spawn_agent("debugger", {"temperature": 0.1})

    assert isinstance(agent, LLMAgent)
    assert agent.worker.pool == "critical"
    assert agent.worker.model == "claude-sonnet-4-20250514"
    assert agent.temperature == pytest.approx(0.1)
    assert agent.budget_scopes == (agent.worker_id, "critical")
    assert supervisor.get_agent(agent.worker_id) is agent
    assert supervisor.find_idle_worker("debugger") is agent
    assert supervisor.find_idle_worker("tooling") is None

    await supervisor.terminate_agent(agent.worker_id)
    assert supervisor.get_agent(agent.worker_id) is None
    with pytest.raises(RecordNotFound):
        await supervisor.terminate_agent(agent.worker_id)


@pytest.mark.anyio
async def test_stale_worker_is_replaced(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    supervisor = runtime.supervisor
    original = await supervisor.spawn_agent("echo")

    assert await supervisor.check_health() == []

    clock.advance(seconds=120)
    restarted = await supervisor.check_health()

    assert len(restarted) == 1
    assert restarted[0] != original.worker_id
    assert [agent.worker_id for agent in supervisor.list_agents()] == restarted
    assert original.status is WorkerStatus.TERMINATED
    [alert] = runtime.ctx.store.list_alerts("agent_stale")
    assert alert.scope_id == original.worker_id
    assert alert.severity == "medium"
    await supervisor.terminate_all()


@pytest.mark.anyio
async def test_heartbeat_keeps_workers_healthy(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    supervisor = runtime.supervisor
    agent = await supervisor.spawn_agent("echo")

    clock.advance(seconds=120)
    supervisor.beat()

    assert await supervisor.check_health() == []
    assert agent.worker.last_heartbeat_at == clock()
    await supervisor.terminate_all()


@pytest.mark.anyio
async def test_metrics_and_status(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    supervisor = runtime.supervisor
    first = await supervisor.spawn_agent("echo")
    await supervisor.spawn_agent("echo")
    await supervisor.spawn_agent("tooling")
    first.mark_busy("task_1")

    metrics = supervisor.fleet_metrics()
    assert metrics["total_agents"] == 3
    assert metrics["agents_by_type"] == {"echo": 2, "tooling": 1}
    assert metrics["agents_by_status"] == {"busy": 1, "idle": 2}

    status = supervisor.get_status()
    assert status["agent_count"] == 3
    described = {agent["id"]: agent for agent in status["agents"]}
    assert described[first.worker_id]["current_task_id"] == "task_1"
    assert described[first.worker_id]["healthy"] is True
    await supervisor.terminate_all()


@pytest.mark.anyio
async def test_queue_task_requires_scheduler(ctx: FleetContext) -> None:
    supervisor = FleetSupervisor(ctx, BudgetLedger(ctx), default_registry())

    with pytest.raises(RuntimeError):
        await supervisor.queue_task("echo", "say")


@pytest.mark.anyio
async def test_queue_task_dispatches_immediately(clock: ManualClock) -> None:
    runtime = make_runtime(make_settings(), clock)
    await runtime.supervisor.start(["echo"])
    await runtime.scheduler.start()

    task_id = await runtime.supervisor.queue_task("echo", "say", {"delay": 0})

    worker: WorkerAgent = runtime.supervisor.list_agents()[0]
    assert runtime.scheduler.get_task(task_id).worker_id == worker.worker_id
    assert await runtime.scheduler.drain(timeout=2)
    await runtime.scheduler.stop()
    await runtime.supervisor.stop()

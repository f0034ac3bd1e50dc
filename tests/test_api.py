"""HTTP API smoke tests."""
from __future__ import annotations

from typing import AsyncIterator, Iterator

import httpx
import pytest

from conftest import ManualClock, make_runtime, make_settings
from fleet.main import app
from fleet.runtime import FleetRuntime, get_ledger, get_scheduler, get_supervisor


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def runtime(clock: ManualClock) -> Iterator[FleetRuntime]:
    runtime = make_runtime(make_settings(), clock)
    app.dependency_overrides[get_scheduler] = lambda: runtime.scheduler
    app.dependency_overrides[get_supervisor] = lambda: runtime.supervisor
    app.dependency_overrides[get_ledger] = lambda: runtime.ledger
    yield runtime
    app.dependency_overrides.clear()


@pytest.fixture
async def client(runtime: FleetRuntime) -> AsyncIterator[httpx.AsyncClient]:
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await runtime.supervisor.terminate_all()


@pytest.mark.anyio
async def test_health(client: httpx.AsyncClient) -> None:
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


@pytest.mark.anyio
async def test_task_lifecycle_endpoints(client: httpx.AsyncClient) -> None:
    created = await client.post(
        "/tasks",
        json={"agent_type": "echo", "task_type": "say", "data": {"content": "hi"}, "priority": 7},
    )
    assert created.status_code == 201
    task = created.json()
    assert task["status"] == "queued"
    assert task["priority"] == 7

    fetched = await client.get(f"/tasks/{task['id']}")
    assert fetched.json()["id"] == task["id"]

    listed = await client.get("/tasks", params={"status": "queued", "agent_type": "echo"})
    assert [item["id"] for item in listed.json()] == [task["id"]]

    stats = (await client.get("/tasks/stats")).json()
    assert stats["queued"] == 1
    assert stats["total"] == 1

    cancelled = await client.post(f"/tasks/{task['id']}/cancel")
    assert cancelled.json()["status"] == "cancelled"
    conflict = await client.post(f"/tasks/{task['id']}/cancel")
    assert conflict.status_code == 409

    assert (await client.get("/tasks/task_missing")).status_code == 404
    assert (await client.post("/tasks/task_missing/cancel")).status_code == 404
    assert (await client.post("/tasks/retry", json={})).json() == {"retried": 0}
    assert (await client.delete("/tasks", params={"age_days": 1})).json() == {"removed": 0}


@pytest.mark.anyio
async def test_task_request_validation(client: httpx.AsyncClient) -> None:
    response = await client.post("/tasks", json={"agent_type": "", "task_type": "say"})

    assert response.status_code == 422


@pytest.mark.anyio
async def test_fleet_agent_endpoints(client: httpx.AsyncClient) -> None:
    spawned = await client.post("/fleet/agents", json={"agent_type": "echo"})
    assert spawned.status_code == 201
    worker_id = spawned.json()["worker_id"]
    assert spawned.json()["status"] == "idle"

    unimplemented = await client.post("/fleet/agents", json={"agent_type": "governance"})
    assert unimplemented.status_code == 400

    agents = (await client.get("/fleet/agents")).json()
    assert [agent["worker_id"] for agent in agents] == [worker_id]

    metrics = (await client.get("/fleet/metrics")).json()
    assert metrics["total_agents"] == 1

    status = (await client.get("/fleet/status")).json()
    assert status["fleet"]["agent_count"] == 1
    assert status["scheduler"]["is_running"] is False

    assert (await client.delete(f"/fleet/agents/{worker_id}")).status_code == 204
    assert (await client.delete(f"/fleet/agents/{worker_id}")).status_code == 404


@pytest.mark.anyio
async def test_budget_endpoints(client: httpx.AsyncClient) -> None:
    saved = await client.put("/budgets/default", json={"limit": 5.0, "scope_kind": "pool"})
    assert saved.status_code == 200
    assert saved.json()["scope_kind"] == "pool"
    assert saved.json()["remaining"] == 5.0

    assert (await client.get("/budgets/default")).json()["limit"] == 5.0
    assert [b["scope_id"] for b in (await client.get("/budgets")).json()] == ["default"]
    assert (await client.get("/budgets/unknown")).status_code == 404
    assert (await client.put("/budgets/default", json={"limit": -1})).status_code == 422
    invalid = await client.put("/budgets/default", json={"limit": 1, "alert_threshold": 2})
    assert invalid.status_code == 422


@pytest.mark.anyio
async def test_cost_endpoints(client: httpx.AsyncClient) -> None:
    breakdown = (await client.get("/costs/breakdown")).json()
    assert breakdown["total_cost"] == 0.0

    timeline = (await client.get("/costs/timeline", params={"days": 2})).json()
    assert len(timeline) == 2

    anomalies = (await client.get("/costs/anomalies")).json()
    assert len(anomalies["hours"]) == 24
    assert anomalies["anomalies"] == []

    assert (await client.get("/costs/optimizations")).json() == []


@pytest.mark.anyio
async def test_clear_old_tasks_by_status(
    client: httpx.AsyncClient, runtime: FleetRuntime, clock: ManualClock
) -> None:
    scheduler = runtime.scheduler
    cancelled = scheduler.queue_task("echo", "say")
    scheduler.cancel_task(cancelled)
    clock.advance(days=10)

    kept = await client.delete("/tasks", params={"age_days": 1, "status": "failed"})
    assert kept.json() == {"removed": 0}

    removed = await client.delete(
        "/tasks", params=[("age_days", "1"), ("status", "failed"), ("status", "cancelled")]
    )
    assert removed.json() == {"removed": 1}

    refused = await client.delete("/tasks", params={"status": "queued"})
    assert refused.status_code == 400

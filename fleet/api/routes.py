"""HTTP API exposing fleet supervisor controls."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from fleet.agents.base import WorkerAgent
from fleet.agents.registry import Unimplemented
from fleet.core.errors import RecordNotFound
from fleet.orchestration.scheduler import Scheduler
from fleet.orchestration.supervisor import FleetSupervisor
from fleet.runtime import get_scheduler, get_supervisor

router = APIRouter(prefix="/fleet", tags=["fleet"])


class AgentSpawnRequest(BaseModel):
    agent_type: str = Field(..., description="Registered agent type to instantiate")
    metadata: dict = Field(default_factory=dict)


class AgentResponse(BaseModel):
    worker_id: str
    agent_type: str
    model: str
    provider: str
    pool: str
    status: str
    current_task_id: Optional[str]
    tasks_completed: int
    tasks_failed: int
    total_cost: float

    @classmethod
    def from_agent(cls, agent: WorkerAgent) -> "AgentResponse":
        worker = agent.worker
        return cls(
            worker_id=worker.id,
            agent_type=worker.agent_type,
            model=worker.model,
            provider=worker.provider,
            pool=worker.pool,
            status=worker.status.value,
            current_task_id=worker.current_task_id,
            tasks_completed=worker.tasks_completed,
            tasks_failed=worker.tasks_failed,
            total_cost=worker.total_cost,
        )


@router.get("/status")
async def fleet_status(
    supervisor: FleetSupervisor = Depends(get_supervisor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, Any]:
    return {"fleet": supervisor.get_status(), "scheduler": scheduler.get_status()}


@router.get("/metrics")
async def fleet_metrics(supervisor: FleetSupervisor = Depends(get_supervisor)) -> Dict[str, Any]:
    return supervisor.fleet_metrics()


@router.get("/agents", response_model=List[AgentResponse])
async def list_agents(supervisor: FleetSupervisor = Depends(get_supervisor)) -> List[AgentResponse]:
    return [AgentResponse.from_agent(agent) for agent in supervisor.list_agents()]


@router.post("/agents", response_model=AgentResponse, status_code=status.HTTP_201_CREATED)
async def spawn_agent(
    request: AgentSpawnRequest,
    supervisor: FleetSupervisor = Depends(get_supervisor),
) -> AgentResponse:
    agent = await supervisor.spawn_agent(request.agent_type, request.metadata)
    if isinstance(agent, Unimplemented):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=agent.reason)
    return AgentResponse.from_agent(agent)


@router.delete("/agents/{worker_id}", status_code=status.HTTP_204_NO_CONTENT)
async def terminate_agent(
    worker_id: str, supervisor: FleetSupervisor = Depends(get_supervisor)
) -> None:
    try:
        await supervisor.terminate_agent(worker_id)
    except RecordNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc

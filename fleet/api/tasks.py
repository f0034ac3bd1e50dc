"""HTTP API exposing the task queue."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from fleet.core.errors import InvalidTaskState, TaskNotFound
from fleet.core.models import Task, TaskStatus
from fleet.orchestration.scheduler import Scheduler
from fleet.orchestration.supervisor import FleetSupervisor
from fleet.runtime import get_scheduler, get_supervisor

router = APIRouter(prefix="/tasks", tags=["tasks"])


class TaskCreateRequest(BaseModel):
    agent_type: str = Field(..., min_length=1, description="Agent type that should run the task")
    task_type: str = Field(..., min_length=1, description="Operation within the agent type")
    data: Dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(5, description="Higher runs first")


class TaskResponse(BaseModel):
    id: str
    agent_type: str
    task_type: str
    priority: int
    status: str
    retry_count: int
    worker_id: Optional[str]
    created_at: datetime
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    result: Optional[Dict[str, Any]]
    error_message: Optional[str]

    @classmethod
    def from_task(cls, task: Task) -> "TaskResponse":
        return cls(
            id=task.id,
            agent_type=task.agent_type,
            task_type=task.task_type,
            priority=task.priority,
            status=task.status.value,
            retry_count=task.retry_count,
            worker_id=task.worker_id,
            created_at=task.created_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
            result=task.result,
            error_message=task.error_message,
        )


class RetryRequest(BaseModel):
    agent_type: Optional[str] = None
    limit: int = Field(10, ge=1)


@router.post("", response_model=TaskResponse, status_code=status.HTTP_201_CREATED)
async def create_task(
    request: TaskCreateRequest,
    supervisor: FleetSupervisor = Depends(get_supervisor),
    scheduler: Scheduler = Depends(get_scheduler),
) -> TaskResponse:
    task_id = await supervisor.queue_task(
        request.agent_type, request.task_type, request.data, request.priority
    )
    return TaskResponse.from_task(scheduler.get_task(task_id))


@router.get("", response_model=List[TaskResponse])
async def list_tasks(
    status_filter: Optional[TaskStatus] = Query(None, alias="status"),
    agent_type: Optional[str] = None,
    scheduler: Scheduler = Depends(get_scheduler),
) -> List[TaskResponse]:
    return [TaskResponse.from_task(task) for task in scheduler.list_tasks(status_filter, agent_type)]


@router.get("/stats")
async def queue_stats(scheduler: Scheduler = Depends(get_scheduler)) -> Dict[str, Any]:
    return scheduler.get_queue_stats()


@router.post("/retry")
async def retry_failed(
    request: RetryRequest, scheduler: Scheduler = Depends(get_scheduler)
) -> Dict[str, int]:
    return {"retried": scheduler.retry_failed_tasks(request.agent_type, request.limit)}


@router.delete("")
async def clear_old(
    age_days: float = Query(7, ge=0),
    statuses: Optional[List[TaskStatus]] = Query(None, alias="status"),
    scheduler: Scheduler = Depends(get_scheduler),
) -> Dict[str, int]:
    try:
        removed = scheduler.clear_old_tasks(age_days, statuses)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return {"removed": removed}


@router.get("/{task_id}", response_model=TaskResponse)
async def get_task(task_id: str, scheduler: Scheduler = Depends(get_scheduler)) -> TaskResponse:
    try:
        task = scheduler.get_task(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return TaskResponse.from_task(task)


@router.post("/{task_id}/cancel", response_model=TaskResponse)
async def cancel_task(task_id: str, scheduler: Scheduler = Depends(get_scheduler)) -> TaskResponse:
    try:
        task = scheduler.cancel_task(task_id)
    except TaskNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except InvalidTaskState as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return TaskResponse.from_task(task)

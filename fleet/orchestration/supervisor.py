"""Supervisor responsible for provisioning and monitoring fleet workers."""
from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Union

import structlog

from fleet.agents.base import WorkerAgent
from fleet.agents.registry import AgentRegistry, Unimplemented
from fleet.core.context import FleetContext
from fleet.core.errors import RecordNotFound
from fleet.core.models import (
    SCHEDULER_ADDRESS,
    AgentConfig,
    Alert,
    FleetSession,
    Message,
    Worker,
    WorkerStatus,
    WorkerTerminated,
)
from fleet.core.timers import cancel_quietly, run_periodically
from fleet.services.budget import BudgetLedger

if TYPE_CHECKING:
    from fleet.orchestration.scheduler import Scheduler

logger = structlog.get_logger(__name__)

SUPERVISOR_ADDRESS = "supervisor"


class FleetSupervisor:
    """Own the live worker set: spawn, heartbeat, health sweep and sessions."""

    def __init__(self, ctx: FleetContext, ledger: BudgetLedger, registry: AgentRegistry) -> None:
        self._ctx = ctx
        self._ledger = ledger
        self._registry = registry
        self._agents: Dict[str, WorkerAgent] = {}
        self._lock = asyncio.Lock()
        self._scheduler: Optional[Scheduler] = None
        self._heartbeat: Optional[asyncio.Task[None]] = None
        self._health: Optional[asyncio.Task[None]] = None
        self.session_id: Optional[str] = None
        self.is_running = False

    def attach_scheduler(self, scheduler: Scheduler) -> None:
        self._scheduler = scheduler

    # Lifecycle

    async def start(
        self, agent_types: Optional[Iterable[str]] = None, trigger: str = "manual"
    ) -> Dict[str, Any]:
        """Open a session, spawn workers and begin monitoring. Idempotent."""
        if self.is_running:
            logger.info("supervisor.already_running", session_id=self.session_id)
            return self.get_status()
        self.is_running = True

        session = self._ctx.store.create_session(
            FleetSession(
                id=f"session_{uuid.uuid4().hex}", trigger=trigger, started_at=self._ctx.now()
            )
        )
        self.session_id = session.id

        if agent_types is None:
            agent_types = [
                name for name, cfg in self._ctx.settings.agent_types.items() if cfg.auto_start
            ]
        spawned = 0
        for agent_type in agent_types:
            if isinstance(await self.spawn_agent(agent_type), WorkerAgent):
                spawned += 1
        self._ctx.store.update_session(session.id, agents_spawned=spawned)

        settings = self._ctx.settings.supervisor
        self._heartbeat = asyncio.create_task(
            run_periodically("supervisor.heartbeat", settings.heartbeat_interval, self.beat)
        )
        self._health = asyncio.create_task(
            run_periodically("supervisor.health", settings.health_interval, self.check_health)
        )
        logger.info("supervisor.started", session_id=session.id, agents_spawned=spawned)
        return self.get_status()

    async def stop(self) -> None:
        """Terminate every worker, halt monitoring and close the session."""
        if not self.is_running:
            return
        await cancel_quietly(self._heartbeat)
        await cancel_quietly(self._health)
        self._heartbeat = self._health = None

        agents = list(self._agents.values())
        await self.terminate_all()

        if self.session_id is not None:
            self._ctx.store.update_session(
                self.session_id,
                ended_at=self._ctx.now(),
                tasks_completed=sum(agent.worker.tasks_completed for agent in agents),
                total_cost=sum(agent.worker.total_cost for agent in agents),
            )
        self.is_running = False
        logger.info("supervisor.stopped", session_id=self.session_id)

    async def spawn_agent(
        self, agent_type: str, overrides: Optional[Dict[str, Any]] = None
    ) -> Union[WorkerAgent, Unimplemented]:
        """Create and start a worker of the given type.

        Types without a registered implementation are skipped and reported as
        :class:`Unimplemented`.
        """
        factory = self._registry.resolve(agent_type)
        if isinstance(factory, Unimplemented):
            logger.warning("supervisor.spawn_skipped", agent_type=agent_type, reason=factory.reason)
            return factory

        credentials = self._ctx.credentials
        agent_config = self._ctx.settings.agent_types.get(agent_type) or AgentConfig(
            agent_type,
            model=credentials.model_for_agent(agent_type),
            provider=credentials.provider_for_agent(agent_type),
        )
        now = self._ctx.now()
        worker = self._ctx.store.create_worker(
            Worker(
                id=f"agent_{uuid.uuid4().hex}",
                agent_type=agent_type,
                model=agent_config.model,
                provider=agent_config.provider,
                pool=agent_config.pool,
                spawned_at=now,
                last_heartbeat_at=now,
                metadata={**agent_config.metadata, **(overrides or {})},
            )
        )
        agent = factory(worker, self._ctx, self._ledger)
        async with self._lock:
            self._agents[worker.id] = agent
        await agent.start()
        logger.info("supervisor.agent_spawned", worker_id=worker.id, agent_type=agent_type)
        return agent

    async def terminate_agent(self, worker_id: str) -> None:
        """Stop a worker and notify the scheduler once its lifecycle has ended."""
        async with self._lock:
            agent = self._agents.pop(worker_id, None)
        if agent is None:
            raise RecordNotFound(f"Worker not found: {worker_id}")
        await agent.terminate()
        self._notify_terminated(worker_id)

    async def terminate_all(self) -> None:
        async with self._lock:
            agents = list(self._agents.values())
            self._agents.clear()
        await asyncio.gather(*(agent.terminate() for agent in agents), return_exceptions=True)
        for agent in agents:
            self._notify_terminated(agent.worker_id)

    def _notify_terminated(self, worker_id: str) -> None:
        # Same mailbox as results, so the notice lands after any outcome already sent.
        self._ctx.bus.post(
            Message(
                sender_id=SUPERVISOR_ADDRESS,
                recipient_id=SCHEDULER_ADDRESS,
                body=WorkerTerminated(worker_id),
            )
        )

    # Lookup

    def list_agents(self) -> List[WorkerAgent]:
        return list(self._agents.values())

    def get_agent(self, worker_id: str) -> Optional[WorkerAgent]:
        return self._agents.get(worker_id)

    def find_idle_worker(self, agent_type: str) -> Optional[WorkerAgent]:
        for agent in self._agents.values():
            if (
                agent.agent_type == agent_type
                and agent.status is WorkerStatus.IDLE
                and agent.is_alive
            ):
                return agent
        return None

    def release_worker(self, worker_id: Optional[str], task_id: Optional[str] = None) -> bool:
        """Force a worker back to idle; no-op for unknown or terminated workers."""
        agent = self._agents.get(worker_id or "")
        if agent is None:
            return False
        return agent.release(task_id)

    # Monitoring

    def beat(self) -> None:
        """Central heartbeat clock: stamp every worker whose loop is still alive."""
        now = self._ctx.now()
        for agent in list(self._agents.values()):
            if agent.is_alive:
                agent.heartbeat(now)

    async def check_health(self) -> List[str]:
        """Restart workers whose heartbeat is older than the timeout.

        Returns the ids of the replacement workers.
        """
        now = self._ctx.now()
        restarted: List[str] = []
        for agent in list(self._agents.values()):
            health = agent.health(now)
            if health["healthy"]:
                continue
            age = health["heartbeat_age"]
            self._ctx.store.create_alert(
                Alert(
                    id=f"alert_{uuid.uuid4().hex}",
                    alert_type="agent_stale",
                    severity="medium",
                    message=f"Agent {agent.agent_type} is stale (heartbeat age: {round(age)}s)",
                    scope_id=agent.worker_id,
                    details={"heartbeat_age": age, "uptime": health["uptime"]},
                    created_at=now,
                )
            )
            logger.warning(
                "supervisor.agent_stale", worker_id=agent.worker_id, heartbeat_age=round(age)
            )
            try:
                await self.terminate_agent(agent.worker_id)
            except RecordNotFound:
                continue
            replacement = await self.spawn_agent(agent.agent_type)
            if isinstance(replacement, WorkerAgent):
                restarted.append(replacement.worker_id)
        return restarted

    # Tasks

    async def queue_task(
        self,
        agent_type: str,
        task_type: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = 5,
    ) -> str:
        """Enqueue a task and try to hand it to an idle worker right away."""
        if self._scheduler is None:
            raise RuntimeError("No scheduler attached to the supervisor")
        task_id = self._scheduler.queue_task(agent_type, task_type, data, priority)
        self._scheduler.dispatch_now(task_id)
        return task_id

    # Reporting

    def get_status(self) -> Dict[str, Any]:
        now = self._ctx.now()
        return {
            "is_running": self.is_running,
            "session_id": self.session_id,
            "agent_count": len(self._agents),
            "agents": [_describe(agent, now) for agent in self._agents.values()],
        }

    def fleet_metrics(self) -> Dict[str, Any]:
        metrics: Dict[str, Any] = {
            "total_agents": len(self._agents),
            "agents_by_type": {},
            "agents_by_status": {},
            "total_cost": 0.0,
            "total_tasks": 0,
            "total_failed": 0,
            "tokens_used": 0,
        }
        for agent in self._agents.values():
            worker = agent.worker
            by_type = metrics["agents_by_type"]
            by_type[worker.agent_type] = by_type.get(worker.agent_type, 0) + 1
            by_status = metrics["agents_by_status"]
            by_status[worker.status.value] = by_status.get(worker.status.value, 0) + 1
            metrics["total_cost"] += worker.total_cost
            metrics["total_tasks"] += worker.tasks_completed
            metrics["total_failed"] += worker.tasks_failed
            metrics["tokens_used"] += worker.tokens_used
        return metrics


def _describe(agent: WorkerAgent, now: datetime) -> Dict[str, Any]:
    worker = agent.worker
    health = agent.health(now)
    return {
        "id": worker.id,
        "agent_type": worker.agent_type,
        "model": worker.model,
        "provider": worker.provider,
        "pool": worker.pool,
        "status": worker.status.value,
        "current_task_id": worker.current_task_id,
        "spawned_at": worker.spawned_at,
        "last_heartbeat_at": worker.last_heartbeat_at,
        "healthy": health["healthy"],
        "metrics": {
            "tasks_completed": worker.tasks_completed,
            "tasks_failed": worker.tasks_failed,
            "tokens_used": worker.tokens_used,
            "total_cost": worker.total_cost,
        },
    }

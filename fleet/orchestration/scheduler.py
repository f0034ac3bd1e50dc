"""Priority task queue that dispatches work to idle fleet workers."""
from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import structlog

from fleet.config import SchedulerSettings
from fleet.core import events
from fleet.core.context import FleetContext
from fleet.core.errors import AdmissionDenied, InvalidTaskState, StaleExecution, TaskNotFound
from fleet.core.models import (
    SCHEDULER_ADDRESS,
    Message,
    Task,
    TaskAssignment,
    TaskOutcome,
    TaskStatus,
    WorkerTerminated,
)
from fleet.core.timers import cancel_quietly, run_periodically
from fleet.orchestration.supervisor import FleetSupervisor
from fleet.services.budget import BudgetLedger

logger = structlog.get_logger(__name__)

DEFAULT_CLEAR_STATUSES = (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)


class AssignOutcome(str, Enum):
    ASSIGNED = "assigned"
    NO_WORKER = "no_worker"
    DENIED = "denied"
    FAILED = "failed"


@dataclass(slots=True)
class InFlight:
    worker_id: str
    dispatch_id: str
    started_at: datetime


class Scheduler:
    """Own the task queue.

    Assignment runs synchronously inside one poll tick. Outcomes come back as
    messages and are applied by a single control loop, so completion state has
    one writer. The in-flight index is a cache of the store's ``processing``
    rows and is reconciled against it at start and on every monitor sweep.
    """

    def __init__(self, ctx: FleetContext, ledger: BudgetLedger, supervisor: FleetSupervisor) -> None:
        self._ctx = ctx
        self._ledger = ledger
        self._supervisor = supervisor
        self._processing: Dict[str, InFlight] = {}
        self._drained = asyncio.Event()
        self._drained.set()
        self._ready = asyncio.Event()
        self._control: Optional[asyncio.Task[None]] = None
        self._poller: Optional[asyncio.Task[None]] = None
        self._monitor: Optional[asyncio.Task[None]] = None
        self.is_running = False
        supervisor.attach_scheduler(self)

    @property
    def settings(self) -> SchedulerSettings:
        return self._ctx.settings.scheduler

    @property
    def in_flight(self) -> Dict[str, InFlight]:
        return dict(self._processing)

    # Lifecycle

    async def start(self) -> None:
        if self.is_running:
            logger.info("scheduler.already_running")
            return
        # Rows left processing by a previous run are requeued.
        self._processing.clear()
        self._drained.set()
        self.recover_orphans()
        self._ready.clear()
        self._control = asyncio.create_task(self._control_loop())
        await self._ready.wait()
        self.is_running = True

        self._poller = asyncio.create_task(
            run_periodically("scheduler.poll", self.settings.poll_interval, self.process_queue)
        )
        self._monitor = asyncio.create_task(
            run_periodically(
                "scheduler.monitor", self.settings.monitor_interval, self.monitor_workers
            )
        )
        self.process_queue()
        self._ctx.events.emit(events.STARTED)
        logger.info(
            "scheduler.started",
            concurrency=self.settings.concurrency,
            poll_interval=self.settings.poll_interval,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Halt the pollers, then wait (bounded) for in-flight work to drain."""
        if not self.is_running:
            return
        self.is_running = False
        await cancel_quietly(self._poller)
        await cancel_quietly(self._monitor)
        self._poller = self._monitor = None

        if timeout is None:
            timeout = self.settings.stop_timeout
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("scheduler.force_stop", in_flight=len(self._processing))

        await cancel_quietly(self._control)
        self._control = None
        self._ctx.events.emit(events.STOPPED, in_flight=len(self._processing))
        logger.info("scheduler.stopped")

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until no task is in flight. Returns False on timeout."""
        try:
            await asyncio.wait_for(self._drained.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _control_loop(self) -> None:
        async with self._ctx.bus.deliver(SCHEDULER_ADDRESS) as inbox:
            self._ready.set()
            while True:
                message = await inbox.get()
                try:
                    self._handle_message(message)
                except Exception:  # noqa: BLE001
                    logger.exception("scheduler.message_failed", sender=message.sender_id)

    def _handle_message(self, message: Message) -> None:
        body = message.body
        if isinstance(body, TaskOutcome):
            self.complete(body)
        elif isinstance(body, WorkerTerminated):
            self._reclaim_worker_tasks(body.worker_id)
        else:
            logger.debug("scheduler.ignored_message", sender=message.sender_id)

    # Queue

    def queue_task(
        self,
        agent_type: str,
        task_type: str,
        data: Optional[Dict[str, Any]] = None,
        priority: int = 5,
    ) -> str:
        task = self._ctx.store.create_task(
            Task(
                id=f"task_{uuid.uuid4().hex}",
                agent_type=agent_type,
                task_type=task_type,
                payload=dict(data or {}),
                priority=int(priority),
                created_at=self._ctx.now(),
            )
        )
        logger.info(
            "scheduler.task_queued",
            task_id=task.id,
            agent_type=agent_type,
            task_type=task_type,
            priority=task.priority,
        )
        self._ctx.events.emit(
            events.TASK_QUEUED,
            task_id=task.id,
            agent_type=agent_type,
            task_type=task_type,
            priority=task.priority,
        )
        return task.id

    def process_queue(self) -> int:
        """Assign queued tasks to free slots. Returns the number assigned."""
        if not self.is_running:
            return 0
        concurrency = self.settings.concurrency
        slots = concurrency - len(self._processing)
        if slots <= 0:
            return 0
        assigned = 0
        for task in self._ctx.store.pending_tasks(slots):
            if len(self._processing) >= concurrency:
                break
            if self.assign_task(task) is AssignOutcome.ASSIGNED:
                assigned += 1
        return assigned

    def dispatch_now(self, task_id: str) -> bool:
        """Best-effort immediate dispatch of a freshly queued task."""
        if not self.is_running or len(self._processing) >= self.settings.concurrency:
            return False
        task = self._ctx.store.get_task(task_id)
        if task is None or task.status is not TaskStatus.QUEUED:
            return False
        return self.assign_task(task) is AssignOutcome.ASSIGNED

    def assign_task(self, task: Task) -> AssignOutcome:
        """Admission-check the task and hand it to an idle worker of its type."""
        agent = self._supervisor.find_idle_worker(task.agent_type)
        if agent is None:
            return AssignOutcome.NO_WORKER

        store = self._ctx.store
        now = self._ctx.now()
        estimate = self._ctx.credentials.predict_cost(task.agent_type, task.task_type)
        decision = self._ledger.admit(agent.budget_scopes, estimate)
        if not decision.allowed:
            error = str(AdmissionDenied(decision.reason, decision.scope_id))
            store.update_task(
                task.id, status=TaskStatus.FAILED, error_message=error, completed_at=now
            )
            logger.warning("scheduler.admission_denied", task_id=task.id, scope_id=decision.scope_id)
            self._ctx.events.emit(
                events.TASK_FAILED, task_id=task.id, error=error, reason="admission_denied"
            )
            return AssignOutcome.DENIED

        dispatch_id = uuid.uuid4().hex
        try:
            started = store.update_task(
                task.id, status=TaskStatus.PROCESSING, worker_id=agent.worker_id, started_at=now
            )
            agent.mark_busy(task.id)
            self._track(task.id, InFlight(agent.worker_id, dispatch_id, now))
            delivered = self._ctx.bus.post(
                Message(
                    sender_id=SCHEDULER_ADDRESS,
                    recipient_id=agent.worker_id,
                    body=TaskAssignment(started, dispatch_id),
                    correlation_id=task.id,
                )
            )
            if not delivered:
                self._untrack(task.id)
                store.update_task(
                    task.id, status=TaskStatus.QUEUED, worker_id=None, started_at=None
                )
                agent.release(task.id)
                return AssignOutcome.NO_WORKER
        except Exception as exc:  # noqa: BLE001
            logger.exception("scheduler.assign_failed", task_id=task.id)
            self._untrack(task.id)
            agent.release(task.id)
            store.update_task(
                task.id,
                status=TaskStatus.FAILED,
                error_message=str(exc) or type(exc).__name__,
                completed_at=now,
            )
            self._ctx.events.emit(events.TASK_FAILED, task_id=task.id, error=str(exc))
            return AssignOutcome.FAILED

        logger.info(
            "scheduler.task_assigned",
            task_id=task.id,
            worker_id=agent.worker_id,
            estimated_cost=estimate,
        )
        self._ctx.events.emit(
            events.TASK_ASSIGNED,
            task_id=task.id,
            worker_id=agent.worker_id,
            estimated_cost=estimate,
        )
        return AssignOutcome.ASSIGNED

    # Completion

    def complete(self, outcome: TaskOutcome) -> None:
        """Apply a worker's outcome. Stale or duplicate outcomes are ignored."""
        entry = self._processing.get(outcome.task_id)
        if entry is None or entry.dispatch_id != outcome.dispatch_id:
            logger.info(
                "scheduler.outcome_ignored", task_id=outcome.task_id, worker_id=outcome.worker_id
            )
            return
        self._untrack(outcome.task_id)

        store = self._ctx.store
        task = store.get_task(outcome.task_id)
        self._supervisor.release_worker(outcome.worker_id, outcome.task_id)
        if task is None or task.status is not TaskStatus.PROCESSING:
            return

        now = self._ctx.now()
        if outcome.ok:
            store.update_task(
                task.id,
                status=TaskStatus.COMPLETED,
                result=outcome.result.to_dict() if outcome.result else None,
                error_message=None,
                completed_at=now,
            )
            logger.info("scheduler.task_completed", task_id=task.id, cost=outcome.cost)
            self._ctx.events.emit(
                events.TASK_COMPLETED,
                task_id=task.id,
                worker_id=outcome.worker_id,
                cost=outcome.cost,
            )
        elif outcome.retryable and task.retry_count < self.settings.max_retries:
            store.update_task(
                task.id,
                status=TaskStatus.QUEUED,
                retry_count=task.retry_count + 1,
                worker_id=None,
                started_at=None,
                error_message=outcome.error,
            )
            logger.warning(
                "scheduler.task_retry",
                task_id=task.id,
                retry_count=task.retry_count + 1,
                error=outcome.error,
            )
            self._ctx.events.emit(
                events.TASK_RETRY,
                task_id=task.id,
                retry_count=task.retry_count + 1,
                error=outcome.error,
            )
        else:
            store.update_task(
                task.id,
                status=TaskStatus.FAILED,
                error_message=outcome.error,
                completed_at=now,
            )
            logger.error("scheduler.task_failed", task_id=task.id, error=outcome.error)
            self._ctx.events.emit(
                events.TASK_FAILED,
                task_id=task.id,
                worker_id=outcome.worker_id,
                error=outcome.error,
                reason=outcome.kind.value,
            )

    # Reclamation

    def monitor_workers(self) -> int:
        """Requeue tasks processing longer than the stale threshold."""
        store = self._ctx.store
        now = self._ctx.now()
        threshold = self.settings.stale_threshold
        reclaimed = 0
        for task in store.list_tasks(status=TaskStatus.PROCESSING):
            elapsed = (now - (task.started_at or task.created_at)).total_seconds()
            if elapsed <= threshold:
                continue
            self._requeue(task, str(StaleExecution(task.id, elapsed)))
            logger.warning(
                "scheduler.task_stale",
                task_id=task.id,
                worker_id=task.worker_id,
                elapsed=round(elapsed),
            )
            self._ctx.events.emit(
                events.TASK_STALE,
                task_id=task.id,
                worker_id=task.worker_id,
                elapsed=elapsed,
            )
            reclaimed += 1

        for task_id in list(self._processing):
            task = store.get_task(task_id)
            if task is None or task.status is not TaskStatus.PROCESSING:
                self._untrack(task_id)
        return reclaimed

    def recover_orphans(self) -> int:
        """Requeue ``processing`` rows that no in-flight entry accounts for."""
        recovered = 0
        for task in self._ctx.store.list_tasks(status=TaskStatus.PROCESSING):
            if task.id in self._processing:
                continue
            self._requeue(task, "Recovered after scheduler restart")
            logger.info("scheduler.orphan_recovered", task_id=task.id)
            recovered += 1
        return recovered

    def _reclaim_worker_tasks(self, worker_id: str) -> None:
        for task_id, entry in list(self._processing.items()):
            if entry.worker_id != worker_id:
                continue
            task = self._ctx.store.get_task(task_id)
            self._untrack(task_id)
            if task is None or task.status is not TaskStatus.PROCESSING:
                continue
            self._requeue(task, "Worker terminated before completion")
            logger.warning("scheduler.worker_lost", task_id=task_id, worker_id=worker_id)
            self._ctx.events.emit(
                events.TASK_STALE, task_id=task_id, worker_id=worker_id, reason="worker_terminated"
            )

    def _requeue(self, task: Task, reason: str) -> None:
        # Reclamation, not a retry: retry_count is left untouched.
        self._ctx.store.update_task(
            task.id,
            status=TaskStatus.QUEUED,
            worker_id=None,
            started_at=None,
            error_message=reason,
        )
        self._untrack(task.id)
        self._supervisor.release_worker(task.worker_id, task.id)

    # Operator actions

    def cancel_task(self, task_id: str) -> Task:
        """Cancel a queued or processing task. Advisory: running work is not interrupted."""
        store = self._ctx.store
        task = store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        if task.status not in (TaskStatus.QUEUED, TaskStatus.PROCESSING):
            raise InvalidTaskState(f"Cannot cancel task in status {task.status.value}")

        if task.status is TaskStatus.PROCESSING:
            entry = self._processing.get(task_id)
            self._untrack(task_id)
            self._supervisor.release_worker(
                task.worker_id or (entry.worker_id if entry else None), task_id
            )
        cancelled = store.update_task(
            task_id, status=TaskStatus.CANCELLED, completed_at=self._ctx.now()
        )
        logger.info("scheduler.task_cancelled", task_id=task_id)
        self._ctx.events.emit(events.TASK_CANCELLED, task_id=task_id)
        return cancelled

    def retry_failed_tasks(self, agent_type: Optional[str] = None, limit: int = 10) -> int:
        """Reset failed tasks to queued with a fresh retry budget."""
        store = self._ctx.store
        tasks = store.failed_tasks(limit, agent_type)
        for task in tasks:
            store.update_task(
                task.id,
                status=TaskStatus.QUEUED,
                retry_count=0,
                error_message=None,
                worker_id=None,
                started_at=None,
                completed_at=None,
            )
            self._ctx.events.emit(events.TASK_RETRY, task_id=task.id, retry_count=0, manual=True)
        logger.info("scheduler.failed_tasks_retried", count=len(tasks), agent_type=agent_type)
        return len(tasks)

    def clear_old_tasks(
        self, age_days: float = 7, statuses: Optional[Iterable[TaskStatus]] = None
    ) -> int:
        """Delete finished tasks whose completion is older than ``age_days``."""
        selected = [TaskStatus(s) for s in (statuses or DEFAULT_CLEAR_STATUSES)]
        for status in selected:
            if not status.is_terminal:
                raise ValueError(f"Refusing to clear tasks in non-terminal status {status.value}")
        cutoff = self._ctx.now() - timedelta(days=age_days)
        store = self._ctx.store
        removed = 0
        for status in selected:
            for task in store.list_tasks(status=status):
                if (task.completed_at or task.created_at) < cutoff and store.delete_task(task.id):
                    removed += 1
        logger.info("scheduler.tasks_cleared", count=removed, age_days=age_days)
        return removed

    # Reporting

    def get_task(self, task_id: str) -> Task:
        task = self._ctx.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def list_tasks(
        self, status: Optional[TaskStatus] = None, agent_type: Optional[str] = None
    ) -> List[Task]:
        return self._ctx.store.list_tasks(status=status, agent_type=agent_type)

    def get_queue_stats(self) -> Dict[str, Any]:
        empty = {status.value: 0 for status in TaskStatus}
        stats: Dict[str, Any] = {**empty, "total": 0, "by_agent_type": {}, "by_priority": {}}
        for task in self._ctx.store.list_tasks():
            status = task.status.value
            stats[status] += 1
            stats["total"] += 1
            stats["by_agent_type"].setdefault(task.agent_type, dict(empty))[status] += 1
            stats["by_priority"].setdefault(task.priority, dict(empty))[status] += 1
        stats["in_flight"] = len(self._processing)
        return stats

    def get_status(self) -> Dict[str, Any]:
        workers: Dict[str, int] = {}
        for entry in self._processing.values():
            workers[entry.worker_id] = workers.get(entry.worker_id, 0) + 1
        return {
            "is_running": self.is_running,
            "processing": len(self._processing),
            "concurrency": self.settings.concurrency,
            "poll_interval": self.settings.poll_interval,
            "workers": workers,
        }

    def _track(self, task_id: str, entry: InFlight) -> None:
        self._processing[task_id] = entry
        self._drained.clear()

    def _untrack(self, task_id: str) -> None:
        self._processing.pop(task_id, None)
        if not self._processing:
            self._drained.set()

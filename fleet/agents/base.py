"""Base worker definition used by the fleet supervisor."""
from __future__ import annotations

import abc
import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import structlog

from fleet.core.context import FleetContext
from fleet.core.errors import (
    AdmissionDenied,
    ConfigurationError,
    ExecutionError,
    InvalidTaskInput,
)
from fleet.core.models import (
    SCHEDULER_ADDRESS,
    CostRecord,
    Message,
    OutcomeKind,
    Task,
    TaskAssignment,
    TaskOutcome,
    TaskResult,
    Worker,
    WorkerStatus,
)
from fleet.core.timers import cancel_quietly
from fleet.services.budget import BudgetLedger

logger = structlog.get_logger(__name__)


class WorkerAgent(abc.ABC):
    """Long-lived worker that executes one task at a time.

    Assignments arrive on the worker's mailbox; each outcome is posted back to
    the scheduler. Subclasses only implement :meth:`process_task`.
    """

    def __init__(self, worker: Worker, ctx: FleetContext, ledger: BudgetLedger) -> None:
        self.worker = worker
        self._ctx = ctx
        self._ledger = ledger
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()
        self.last_error: Optional[str] = None
        if self.worker.last_heartbeat_at is None:
            self.worker.last_heartbeat_at = self.worker.spawned_at

    @property
    def worker_id(self) -> str:
        return self.worker.id

    @property
    def agent_type(self) -> str:
        return self.worker.agent_type

    @property
    def status(self) -> WorkerStatus:
        return self.worker.status

    @property
    def current_task_id(self) -> Optional[str]:
        return self.worker.current_task_id

    @property
    def budget_scopes(self) -> Tuple[str, str]:
        """Budget scopes charged for this worker's spend: itself and its pool."""
        return (self.worker.id, self.worker.pool)

    @property
    def is_alive(self) -> bool:
        return self._runner is not None and not self._runner.done()

    # Lifecycle

    async def start(self) -> None:
        """Start the worker's mailbox loop."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe())
        await self._started_event.wait()

    async def terminate(self, timeout: Optional[float] = None) -> None:
        """Stop the loop, waiting up to ``timeout`` before cancelling it."""
        if timeout is None:
            timeout = self._ctx.settings.supervisor.terminate_timeout
        self._stop_event.set()
        runner = self._runner
        if runner is not None and not runner.done():
            try:
                await asyncio.wait_for(asyncio.shield(runner), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning("worker.terminate_timeout", worker_id=self.worker_id)
                await cancel_quietly(runner)
        self.worker.status = WorkerStatus.TERMINATED
        self.worker.current_task_id = None
        self.worker.terminated_at = self._ctx.now()
        self._persist("status", "current_task_id", "terminated_at")
        logger.info("worker.terminated", worker_id=self.worker_id, agent_type=self.agent_type)

    async def _run_safe(self) -> None:
        try:
            async with self._ctx.bus.deliver(self.worker_id) as inbox:
                self._started_event.set()
                await self.on_start()
                while not self._stop_event.is_set():
                    try:
                        message = await asyncio.wait_for(inbox.get(), timeout=0.5)
                    except asyncio.TimeoutError:
                        await self.on_idle()
                        continue
                    await self._handle_message(message)
        except Exception as exc:  # noqa: BLE001
            self.last_error = str(exc)
            logger.exception("worker.crashed", worker_id=self.worker_id)
        finally:
            self._started_event.set()
            await self.on_stop()

    async def _handle_message(self, message: Message) -> None:
        body = message.body
        if not isinstance(body, TaskAssignment):
            logger.debug("worker.ignored_message", worker_id=self.worker_id, sender=message.sender_id)
            return
        try:
            outcome = await self.execute(body.task, dispatch_id=body.dispatch_id)
        except Exception as exc:  # noqa: BLE001
            logger.exception("worker.execute_failed", worker_id=self.worker_id, task_id=body.task.id)
            outcome = self._outcome(
                body.task, OutcomeKind.FAILED, body.dispatch_id, error=str(exc) or type(exc).__name__
            )
        self._ctx.bus.post(
            Message(
                sender_id=self.worker_id,
                recipient_id=SCHEDULER_ADDRESS,
                body=outcome,
                correlation_id=body.task.id,
            )
        )

    # Execution

    def mark_busy(self, task_id: str) -> None:
        self.worker.status = WorkerStatus.BUSY
        self.worker.current_task_id = task_id
        self._persist("status", "current_task_id")

    def release(self, task_id: Optional[str] = None) -> bool:
        """Return to idle unless terminated or already working on another task."""
        if self.worker.status is WorkerStatus.TERMINATED:
            return False
        if task_id is not None and self.worker.current_task_id not in (task_id, None):
            return False
        self.worker.status = WorkerStatus.IDLE
        self.worker.current_task_id = None
        self._persist("status", "current_task_id")
        return True

    async def execute(self, task: Task, dispatch_id: Optional[str] = None) -> TaskOutcome:
        """Run one task end to end and describe how it ended.

        Task errors become outcomes. A failure while recording the cost of a
        completed task is logged and the task still counts as completed.
        """
        self.mark_busy(task.id)
        estimate = self._ctx.credentials.predict_cost(self.agent_type, task.task_type)
        log = logger.bind(worker_id=self.worker_id, task_id=task.id, task_type=task.task_type)
        try:
            decision = self._ledger.admit(self.budget_scopes, estimate)
            if not decision.allowed:
                denied = AdmissionDenied(decision.reason, decision.scope_id)
                log.warning("worker.admission_denied", scope_id=decision.scope_id)
                return self._outcome(task, OutcomeKind.DENIED, dispatch_id, error=str(denied))

            log.info("worker.task_started", estimated_cost=estimate)
            try:
                result = await self.process_task(task)
            except ConfigurationError as exc:
                log.error("worker.misconfigured", error=str(exc))
                self._count_failure()
                return self._outcome(task, OutcomeKind.MISCONFIGURED, dispatch_id, error=str(exc))
            except InvalidTaskInput as exc:
                log.warning("worker.task_rejected", error=str(exc))
                self._count_failure()
                return self._outcome(task, OutcomeKind.REJECTED, dispatch_id, error=str(exc))
            except ExecutionError as exc:
                log.warning("worker.task_failed", error=str(exc))
                self._count_failure()
                return self._outcome(task, OutcomeKind.FAILED, dispatch_id, error=str(exc))
            except Exception as exc:  # noqa: BLE001
                log.exception("worker.task_crashed")
                self._count_failure()
                return self._outcome(
                    task, OutcomeKind.FAILED, dispatch_id, error=str(exc) or type(exc).__name__
                )

            cost = result.cost if result.cost is not None else estimate
            try:
                self._record_cost(task, result, cost)
            except Exception:  # noqa: BLE001
                log.exception("worker.cost_recording_failed", cost=cost)
            log.info("worker.task_completed", cost=cost)
            return self._outcome(task, OutcomeKind.COMPLETED, dispatch_id, result=result, cost=cost)
        finally:
            self.release(task.id)

    def _outcome(
        self,
        task: Task,
        kind: OutcomeKind,
        dispatch_id: Optional[str],
        *,
        result: Optional[TaskResult] = None,
        error: Optional[str] = None,
        cost: float = 0.0,
    ) -> TaskOutcome:
        return TaskOutcome(
            task_id=task.id,
            worker_id=self.worker_id,
            kind=kind,
            result=result,
            error=error,
            cost=cost,
            dispatch_id=dispatch_id,
        )

    def _record_cost(self, task: Task, result: TaskResult, cost: float) -> None:
        model = result.model or self.worker.model
        self._ctx.store.create_cost_record(
            CostRecord(
                id=f"cost_{uuid.uuid4().hex}",
                worker_id=self.worker_id,
                task_id=task.id,
                provider=self.worker.provider,
                model=model,
                cost=cost,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                timestamp=self._ctx.now(),
            )
        )
        for scope_id in self.budget_scopes:
            self._ledger.record_cost(scope_id, cost)
        self._ctx.credentials.record_usage(
            self.worker.pool,
            self.worker.provider,
            model,
            result.input_tokens,
            result.output_tokens,
            cost,
        )
        self.worker.tasks_completed += 1
        self.worker.tokens_used += result.input_tokens + result.output_tokens
        self.worker.total_cost += cost
        self._persist("tasks_completed", "tokens_used", "total_cost")

    def _count_failure(self) -> None:
        self.worker.tasks_failed += 1
        self._persist("tasks_failed")

    # Liveness

    def heartbeat(self, now: Optional[datetime] = None) -> None:
        self.worker.last_heartbeat_at = now or self._ctx.now()
        self._persist("last_heartbeat_at")

    def health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        now = now or self._ctx.now()
        heartbeat_age = (now - self.worker.last_heartbeat_at).total_seconds()
        timeout = self._ctx.settings.supervisor.heartbeat_timeout
        return {
            "worker_id": self.worker_id,
            "agent_type": self.agent_type,
            "status": self.worker.status.value,
            "healthy": self.worker.status is not WorkerStatus.TERMINATED
            and heartbeat_age < timeout,
            "heartbeat_age": heartbeat_age,
            "uptime": (now - self.worker.spawned_at).total_seconds(),
            "current_task_id": self.worker.current_task_id,
            "last_error": self.last_error,
        }

    def _persist(self, *fields: str) -> None:
        self._ctx.store.update_worker(
            self.worker_id, **{name: getattr(self.worker, name) for name in fields}
        )

    @abc.abstractmethod
    async def process_task(self, task: Task) -> TaskResult:
        """Run the task's business logic. Raise ``ExecutionError`` on failure."""

    async def on_start(self) -> None:
        """Hook executed once the worker loop begins."""
        return None

    async def on_stop(self) -> None:
        """Hook executed when the worker loop exits."""
        return None

    async def on_idle(self) -> None:
        """Hook invoked when no assignment arrived during the idle window."""
        return None

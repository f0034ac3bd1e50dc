"""Exception taxonomy for the fleet."""
from __future__ import annotations

from typing import Optional


class FleetError(Exception):
    """Base class for every error raised by fleet components."""


class AdmissionDenied(FleetError):
    """Budget pre-check refused a task. Terminal, never retried."""

    def __init__(self, reason: str, scope_id: Optional[str] = None) -> None:
        self.reason = reason
        self.scope_id = scope_id
        super().__init__(f"Admission denied: {reason}")


class ExecutionError(FleetError):
    """Raised by pluggable task logic. Retried up to the configured limit."""


class StaleExecution(FleetError):
    """A processing task was reclaimed after exceeding the stale threshold."""

    def __init__(self, task_id: str, elapsed_seconds: float) -> None:
        self.task_id = task_id
        self.elapsed_seconds = elapsed_seconds
        super().__init__(f"Stale execution reclaimed after {int(elapsed_seconds)}s")


class ConfigurationError(FleetError):
    """No usable credentials or settings. Surfaced immediately, never retried."""


class InvalidTaskInput(FleetError):
    """The task type or payload can never run on this worker. Never retried."""


class RecordNotFound(FleetError, LookupError):
    """The store holds no row with the requested id."""


class TaskNotFound(RecordNotFound):
    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class InvalidTaskState(FleetError):
    """Operation is not valid for the task's current status."""

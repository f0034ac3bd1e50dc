"""Zero-cost worker used by the demo and in tests."""
from __future__ import annotations

import asyncio
import random

from fleet.agents.base import WorkerAgent
from fleet.core.errors import ExecutionError
from fleet.core.models import Task, TaskResult


class EchoAgent(WorkerAgent):
    """Worker that echoes the task payload back without calling a provider."""

    async def process_task(self, task: Task) -> TaskResult:
        delay = task.payload.get("delay")
        await asyncio.sleep(float(delay) if delay is not None else random.uniform(0.01, 0.05))
        if task.payload.get("fail"):
            raise ExecutionError(str(task.payload.get("error") or "echo failure requested"))
        content = task.payload.get("content", "")
        return TaskResult(
            content=f"{self.agent_type} heard {content}",
            input_tokens=len(str(content).split()),
            output_tokens=len(str(content).split()) + 2,
            cost=0.0,
            model=self.worker.model,
        )

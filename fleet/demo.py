"""CLI demonstration of a small echo fleet working through a queue."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from typing import NoReturn

from fleet.config import Config, SchedulerSettings
from fleet.core.logging import configure_logging
from fleet.runtime import build_runtime
from fleet.services.key_pool import CredentialRouter


async def main() -> None:
    configure_logging("WARNING")
    settings = replace(Config(), scheduler=SchedulerSettings(poll_interval=0.1, concurrency=2))
    runtime = build_runtime(settings, credentials=CredentialRouter(settings.agent_types))

    completed = asyncio.Event()
    done: list = []

    def on_event(event: str, payload: dict) -> None:
        print(f"[{event}] {payload}")
        if event in ("task_completed", "task_failed"):
            done.append(payload["task_id"])
            if len(done) == 4:
                completed.set()

    runtime.ctx.events.subscribe("*", on_event)
    await runtime.start(["echo", "echo"])
    runtime.ledger.set_pool_budget("default", limit=1.0)

    for number, priority in enumerate((1, 5, 9, 5)):
        await runtime.supervisor.queue_task(
            "echo", "say", {"content": f"message {number}", "delay": 0.2}, priority=priority
        )

    await asyncio.wait_for(completed.wait(), timeout=10)
    print(f"Queue stats: {runtime.scheduler.get_queue_stats()}")
    print(f"Fleet metrics: {runtime.supervisor.fleet_metrics()}")
    await runtime.stop()


def run() -> NoReturn:
    asyncio.run(main())


if __name__ == "__main__":
    run()

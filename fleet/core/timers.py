"""Periodic sweep helper shared by the scheduler, supervisor and ledger."""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


async def run_periodically(name: str, interval: float, tick: Callable[[], Any]) -> None:
    """Call ``tick`` every ``interval`` seconds until cancelled.

    Errors raised by a tick are logged and the loop keeps going.
    """
    while True:
        await asyncio.sleep(interval)
        try:
            result = tick()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:  # noqa: BLE001
            logger.exception("sweep.failed", sweep=name)


async def cancel_quietly(task: Optional[asyncio.Task[Any]]) -> None:
    """Cancel a background task and wait for it to unwind."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass

"""Application runtime composition helpers."""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from datetime import datetime
from typing import Callable, Iterable, Optional

import structlog

from fleet.agents.registry import AgentRegistry, default_registry
from fleet.config import Config, config
from fleet.core.context import FleetContext
from fleet.core.events import EventHub
from fleet.core.logging import configure_logging
from fleet.core.message_bus import MessageBus
from fleet.core.models import utc_now
from fleet.orchestration.scheduler import Scheduler
from fleet.orchestration.supervisor import FleetSupervisor
from fleet.services.budget import BudgetLedger
from fleet.services.key_pool import CredentialRouter
from fleet.storage.base import Store
from fleet.storage.memory import InMemoryStore
from fleet.storage.sql import SqlStore

logger = structlog.get_logger(__name__)


@dataclass(slots=True)
class FleetRuntime:
    """Everything one running fleet needs, wired together."""

    ctx: FleetContext
    ledger: BudgetLedger
    supervisor: FleetSupervisor
    scheduler: Scheduler

    async def start(self, agent_types: Optional[Iterable[str]] = None) -> None:
        await self.ledger.start()
        await self.supervisor.start(agent_types)
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.supervisor.stop()
        await self.ledger.stop()


def build_store(settings: Config) -> Store:
    if settings.database_url:
        return SqlStore(settings.database_url)
    return InMemoryStore()


def build_runtime(
    settings: Optional[Config] = None,
    *,
    store: Optional[Store] = None,
    credentials: Optional[CredentialRouter] = None,
    registry: Optional[AgentRegistry] = None,
    clock: Callable[[], datetime] = utc_now,
) -> FleetRuntime:
    settings = settings or config
    ctx = FleetContext(
        store=store or build_store(settings),
        bus=MessageBus(),
        credentials=credentials or CredentialRouter.from_env(settings.agent_types),
        events=EventHub(),
        settings=settings,
        clock=clock,
    )
    ledger = BudgetLedger(ctx)
    supervisor = FleetSupervisor(ctx, ledger, registry or default_registry())
    scheduler = Scheduler(ctx, ledger, supervisor)
    return FleetRuntime(ctx=ctx, ledger=ledger, supervisor=supervisor, scheduler=scheduler)


@lru_cache
def get_runtime() -> FleetRuntime:
    configure_logging(config.log_level, json=config.log_json)
    runtime = build_runtime(config)
    logger.info("runtime.built", environment=config.environment, store=type(runtime.ctx.store).__name__)
    return runtime


def get_supervisor() -> FleetSupervisor:
    return get_runtime().supervisor


def get_scheduler() -> Scheduler:
    return get_runtime().scheduler


def get_ledger() -> BudgetLedger:
    return get_runtime().ledger

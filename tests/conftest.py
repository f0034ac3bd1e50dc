"""Shared fixtures for fleet tests."""
from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import pytest

from fleet.agents.registry import AgentRegistry, default_registry
from fleet.config import BudgetSettings, Config, SchedulerSettings, SupervisorSettings
from fleet.core.context import FleetContext
from fleet.core.events import EventHub
from fleet.core.message_bus import MessageBus
from fleet.runtime import FleetRuntime, build_runtime
from fleet.services.key_pool import CredentialRouter
from fleet.storage.memory import InMemoryStore


class ManualClock:
    """Clock that only moves when a test advances it."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.current = start or datetime(2025, 1, 6, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


def make_settings(**scheduler: Any) -> Config:
    """Settings whose background sweeps never fire during a test."""
    scheduler_settings: Dict[str, Any] = {
        "poll_interval": 3600.0,
        "monitor_interval": 3600.0,
        "concurrency": 3,
        "max_retries": 3,
        "stop_timeout": 2.0,
        **scheduler,
    }
    return replace(
        Config(),
        scheduler=SchedulerSettings(**scheduler_settings),
        supervisor=SupervisorSettings(
            heartbeat_interval=3600.0,
            heartbeat_timeout=60.0,
            health_interval=3600.0,
            terminate_timeout=1.0,
        ),
        budget=BudgetSettings(check_interval=3600.0),
    )


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def settings() -> Config:
    return make_settings()


@pytest.fixture
def ctx(settings: Config, clock: ManualClock) -> FleetContext:
    return FleetContext(
        store=InMemoryStore(),
        bus=MessageBus(),
        credentials=CredentialRouter(settings.agent_types),
        events=EventHub(),
        settings=settings,
        clock=clock,
    )


def make_runtime(
    settings: Config,
    clock: ManualClock,
    registry: Optional[AgentRegistry] = None,
    credentials: Optional[CredentialRouter] = None,
) -> FleetRuntime:
    return build_runtime(
        settings,
        store=InMemoryStore(),
        credentials=credentials or CredentialRouter(settings.agent_types),
        registry=registry or default_registry(),
        clock=clock,
    )

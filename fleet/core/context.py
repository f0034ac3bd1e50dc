"""Shared collaborators handed to every fleet component."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable

from fleet.config import Config
from fleet.core.events import EventHub
from fleet.core.message_bus import MessageBus
from fleet.core.models import utc_now
from fleet.services.key_pool import CredentialRouter
from fleet.storage.base import Store


@dataclass(slots=True)
class FleetContext:
    """Store, bus, credentials, events, settings and clock for one fleet."""

    store: Store
    bus: MessageBus
    credentials: CredentialRouter
    events: EventHub = field(default_factory=EventHub)
    settings: Config = field(default_factory=Config)
    clock: Callable[[], datetime] = utc_now

    def now(self) -> datetime:
        return self.clock()

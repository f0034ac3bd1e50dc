"""In-memory mailbox bus connecting the scheduler and its workers."""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict

import structlog

from .models import Message

logger = structlog.get_logger(__name__)


class MessageBus:
    """Async message hub: one FIFO mailbox per registered address."""

    def __init__(self) -> None:
        self._mailboxes: Dict[str, asyncio.Queue[Message]] = {}

    def register(self, address: str) -> asyncio.Queue[Message]:
        """Ensure a mailbox exists for the address."""
        if address not in self._mailboxes:
            self._mailboxes[address] = asyncio.Queue()
        return self._mailboxes[address]

    def unregister(self, address: str) -> None:
        """Remove the mailbox to stop further deliveries."""
        self._mailboxes.pop(address, None)

    def has_mailbox(self, address: str) -> bool:
        return address in self._mailboxes

    def post(self, message: Message) -> bool:
        """Deliver without suspending. Returns False when nobody listens."""
        queue = self._mailboxes.get(message.recipient_id or "")
        if queue is None:
            logger.debug(
                "bus.undeliverable",
                sender=message.sender_id,
                recipient=message.recipient_id,
            )
            return False
        queue.put_nowait(message)
        return True

    async def send(self, message: Message) -> bool:
        """Coroutine form of :meth:`post` for callers already awaiting."""
        return self.post(message)

    @asynccontextmanager
    async def deliver(self, address: str) -> AsyncIterator[asyncio.Queue[Message]]:
        """Context manager yielding the address's mailbox queue."""
        queue = self.register(address)
        try:
            yield queue
        finally:
            self.unregister(address)

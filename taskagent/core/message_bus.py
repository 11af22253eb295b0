"""In-process bus carrying control messages between agent components."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Set, Tuple

from .models import AgentMessage, MessageKind

logger = logging.getLogger(__name__)

# Kinds where one queued copy per sender already produces the full effect.
COALESCED_KINDS = frozenset({MessageKind.POLL_NOW})


class Mailbox:
    """FIFO inbox of one component.

    A coalesced message is dropped while an identical request from the same
    sender is still waiting to be read.
    """

    def __init__(self, component_id: str) -> None:
        self.component_id = component_id
        self._queue: asyncio.Queue[AgentMessage] = asyncio.Queue()
        self._waiting: Set[Tuple[MessageKind, str]] = set()

    def put(self, message: AgentMessage) -> None:
        if message.kind in COALESCED_KINDS:
            key = (message.kind, message.sender_id)
            if key in self._waiting:
                logger.debug("Coalesced %s from %s for %s", message.kind.value, message.sender_id, self.component_id)
                return
            self._waiting.add(key)
        self._queue.put_nowait(message)

    async def get(self) -> AgentMessage:
        message = await self._queue.get()
        self._waiting.discard((message.kind, message.sender_id))
        return message

    def empty(self) -> bool:
        return self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()


class AgentBus:
    """Routes messages between the runtime, the health reporter and the API."""

    def __init__(self) -> None:
        self._mailboxes: Dict[str, Mailbox] = {}

    def register(self, component_id: str) -> Mailbox:
        if component_id in self._mailboxes:
            raise ValueError(f"Component {component_id} already has a mailbox")
        mailbox = Mailbox(component_id)
        self._mailboxes[component_id] = mailbox
        return mailbox

    def unregister(self, component_id: str) -> None:
        self._mailboxes.pop(component_id, None)

    async def send(self, message: AgentMessage) -> bool:
        """Deliver to ``recipient_id``, or to every other component when it is None.

        Returns False when a directed message has no registered mailbox.
        """
        if message.recipient_id is not None:
            mailbox = self._mailboxes.get(message.recipient_id)
            if mailbox is None:
                logger.debug("No mailbox for %s; dropped %s", message.recipient_id, message.kind.value)
                return False
            mailbox.put(message)
            return True

        for component_id, mailbox in list(self._mailboxes.items()):
            if component_id != message.sender_id:
                mailbox.put(message)
        return True

    @asynccontextmanager
    async def deliver(self, component_id: str) -> AsyncIterator[Mailbox]:
        """Hold a mailbox for ``component_id`` for the duration of the block."""
        mailbox = self.register(component_id)
        try:
            yield mailbox
        finally:
            self.unregister(component_id)

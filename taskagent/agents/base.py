"""Base background component driven by a bus mailbox and an idle tick."""
from __future__ import annotations

import abc
import asyncio
import logging
from enum import Enum, auto
from typing import Optional

from taskagent.core.message_bus import AgentBus
from taskagent.core.models import AgentMessage

logger = logging.getLogger(__name__)


class ServiceState(Enum):
    """Lifecycle states of a background component."""

    SPAWNING = auto()
    RUNNING = auto()
    STOPPING = auto()
    STOPPED = auto()
    FAILED = auto()


class Service(abc.ABC):
    """Abstract component encapsulating lifecycle hooks and message handling."""

    def __init__(self, component_id: str, bus: AgentBus, *, tick_seconds: float = 0.5) -> None:
        self.component_id = component_id
        self.tick_seconds = tick_seconds
        self.state = ServiceState.SPAWNING
        self.last_error: Optional[str] = None
        self._bus = bus
        self._runner: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._started_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def start(self) -> None:
        """Start the component's background loop."""
        if self._runner is not None:
            return
        self._stop_event.clear()
        self._started_event.clear()
        self._runner = asyncio.create_task(self._run_safe(), name=f"{self.component_id}-loop")
        await self._started_event.wait()

    async def stop(self) -> None:
        """Signal the loop to stop and wait for completion."""
        if self._runner is None:
            return
        self.state = ServiceState.STOPPING
        self._stop_event.set()
        await self._runner
        self._runner = None

    async def _run_safe(self) -> None:
        """Wrap the main loop to handle exceptions gracefully."""
        try:
            async with self._bus.deliver(self.component_id) as inbox:
                self.state = ServiceState.RUNNING
                self._started_event.set()
                await self.on_start()
                while not self._stop_event.is_set():
                    try:
                        message = await asyncio.wait_for(inbox.get(), timeout=self.tick_seconds)
                    except asyncio.TimeoutError:
                        await self.on_idle()
                    else:
                        await self.handle_message(message)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Component %s loop crashed", self.component_id)
            self.state = ServiceState.FAILED
            self.last_error = str(exc)
            self._started_event.set()
        else:
            self.state = ServiceState.STOPPED
            self._started_event.set()
        finally:
            await self.on_stop()

    async def send(self, message: AgentMessage) -> bool:
        """Send a message via the shared bus."""
        return await self._bus.send(message)

    @abc.abstractmethod
    async def handle_message(self, message: AgentMessage) -> None:
        """Process messages coming from the bus."""

    async def on_start(self) -> None:
        """Hook executed once the loop begins."""
        return None

    async def on_stop(self) -> None:
        """Hook executed when the loop exits."""
        return None

    async def on_idle(self) -> None:
        """Hook invoked when no message arrived during the tick window."""
        return None

"""Heartbeat publisher and shutdown coordinator for one agent."""
from __future__ import annotations

import asyncio
import logging
import signal
import time
from datetime import datetime
from typing import Callable, Optional

import psutil

from taskagent.agents.agent_runtime import AgentRuntime, DrainSummary
from taskagent.agents.base import Service
from taskagent.core.errors import AuthenticationError, CircuitOpenError
from taskagent.core.message_bus import AgentBus
from taskagent.core.models import (
    AgentHealth,
    AgentMessage,
    Credentials,
    MessageKind,
    ResourceSnapshot,
    utc_now,
)
from taskagent.services.circuit_breaker import CircuitBreaker
from taskagent.services.coordinator import Coordinator

logger = logging.getLogger(__name__)


class HealthReporter(Service):
    """Publishes liveness and metrics to the coordinator.

    A heartbeat is sent every ``heartbeat_interval_seconds`` and whenever the
    runtime broadcasts a status change. Heartbeat failures are logged and
    never affect the runtime, except a credential rejection, which moves the
    runtime to ``unauthenticated``.
    """

    def __init__(
        self,
        *,
        runtime: AgentRuntime,
        bus: AgentBus,
        coordinator: Coordinator,
        breaker: CircuitBreaker,
        credentials: Credentials,
        heartbeat_interval_seconds: float = 10.0,
        shutdown_grace_seconds: float = 5.0,
        tick_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(f"{runtime.agent_id}/health", bus, tick_seconds=tick_seconds)
        self.runtime = runtime
        self.heartbeat_interval_seconds = heartbeat_interval_seconds
        self.shutdown_grace_seconds = shutdown_grace_seconds
        self.heartbeats_sent = 0
        self.last_heartbeat_at: Optional[datetime] = None
        self._coordinator = coordinator
        self._breaker = breaker
        self._credentials = credentials
        self._clock = clock
        self._started_at = clock()
        self._last_sent: Optional[float] = None
        self._process = psutil.Process()
        self._shutdown_task: Optional[asyncio.Task[DrainSummary]] = None
        self._shutdown_done = asyncio.Event()

    async def on_start(self) -> None:
        # Prime cpu_percent so the first real sample is meaningful.
        self._process.cpu_percent(interval=None)
        await self.send_heartbeat()

    async def on_idle(self) -> None:
        if self._last_sent is None or self._clock() - self._last_sent >= self.heartbeat_interval_seconds:
            await self.send_heartbeat()

    async def handle_message(self, message: AgentMessage) -> None:
        if message.kind is MessageKind.STATUS_CHANGED:
            logger.debug("Status change %s, sending heartbeat", message.payload)
            await self.send_heartbeat()

    def resource_snapshot(self) -> ResourceSnapshot:
        with self._process.oneshot():
            return ResourceSnapshot(
                rss_bytes=self._process.memory_info().rss,
                cpu_percent=self._process.cpu_percent(interval=None),
                num_threads=self._process.num_threads(),
                uptime_seconds=self._clock() - self._started_at,
            )

    def build_health(self) -> AgentHealth:
        runtime = self.runtime
        return AgentHealth(
            agent_id=runtime.agent_id,
            status=runtime.status,
            phase=runtime.phase,
            last_heartbeat_at=utc_now(),
            active_task_count=runtime.active_count,
            queue_size=runtime.queue.size(),
            paused=runtime.paused,
            resources=self.resource_snapshot(),
        )

    async def send_heartbeat(self) -> bool:
        """Send one heartbeat; returns whether the coordinator accepted it."""
        self._last_sent = self._clock()
        if not self._credentials.is_present:
            logger.debug("Skipping heartbeat: agent %s has no credentials", self.runtime.agent_id)
            return False

        health = self.build_health()
        metrics = self.runtime.metrics.snapshot(self._clock())
        try:
            await self._breaker.execute(
                lambda: self._coordinator.send_heartbeat(
                    self.runtime.agent_id,
                    health,
                    metrics,
                    self._credentials,
                ),
            )
        except CircuitOpenError as exc:
            logger.debug("Heartbeat skipped: %s", exc)
            return False
        except AuthenticationError as exc:
            logger.warning("Heartbeat rejected: %s", exc)
            await self.runtime.on_auth_rejected(exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning("Heartbeat failed: %s", exc)
            return False

        self.heartbeats_sent += 1
        self.last_heartbeat_at = health.last_heartbeat_at
        return True

    async def shutdown(self) -> DrainSummary:
        """Drain the runtime, send a final heartbeat and stop reporting."""
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())
        return await asyncio.shield(self._shutdown_task)

    async def _shutdown(self) -> DrainSummary:
        logger.info("Shutting down agent %s (grace %.1fs)", self.runtime.agent_id, self.shutdown_grace_seconds)
        summary = await self.runtime.drain(self.shutdown_grace_seconds)
        await self.send_heartbeat()
        await self.stop()
        self._shutdown_done.set()
        return summary

    async def wait_shutdown(self) -> None:
        """Block until a shutdown started by a signal or by ``shutdown()`` is done."""
        await self._shutdown_done.wait()

    def install_signal_handlers(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> None:
        """Trigger ``shutdown()`` on SIGINT and SIGTERM."""
        loop = loop or asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self._on_signal, signum)
            except NotImplementedError:
                logger.warning("Signal handlers are not supported on this platform")
                return

    def _on_signal(self, signum: int) -> None:
        logger.info("Received %s", signal.Signals(signum).name)
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.ensure_future(self._shutdown())

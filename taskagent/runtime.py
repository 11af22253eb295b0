"""Application runtime composition helpers."""
from __future__ import annotations

import time
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable, Optional

from taskagent.agents.agent_runtime import AgentRuntime
from taskagent.agents.health import HealthReporter
from taskagent.config import Config, config
from taskagent.core.message_bus import AgentBus
from taskagent.core.models import Credentials
from taskagent.handlers.echo import EchoHandler
from taskagent.handlers.page_fetch import PageFetchHandler
from taskagent.orchestration.dispatcher import ExecutionDispatcher
from taskagent.services.circuit_breaker import BreakerRegistry
from taskagent.services.coordinator import Coordinator, HttpCoordinatorClient
from taskagent.services.retry import RetryPolicy
from taskagent.services.sandbox import sandbox_factory

COORDINATOR_BREAKER = "coordinator"

# Domains whose detail pages are fetched with the generic page handler.
PAGE_FETCH_DOMAINS = ("web",)


@dataclass
class Agent:
    """Every long-lived component of one agent process."""

    config: Config
    bus: AgentBus
    coordinator: Coordinator
    credentials: Credentials
    breakers: BreakerRegistry
    dispatcher: ExecutionDispatcher
    runtime: AgentRuntime
    reporter: HealthReporter

    async def start(self) -> None:
        await self.runtime.start()
        await self.reporter.start()

    async def shutdown(self) -> None:
        await self.reporter.shutdown()


def build_dispatcher(settings: Config, breakers: Optional[BreakerRegistry] = None) -> ExecutionDispatcher:
    dispatcher = ExecutionDispatcher(
        context_factory=sandbox_factory(
            request_timeout_seconds=settings.coordinator.request_timeout_seconds,
        ),
        task_timeout_seconds=settings.runtime.task_timeout_seconds,
        breakers=breakers,
    )
    dispatcher.register("demo", "echo", EchoHandler())
    dispatcher.register_many(PAGE_FETCH_DOMAINS, "detail", PageFetchHandler())
    return dispatcher


def build_agent(
    settings: Config,
    coordinator: Coordinator,
    *,
    dispatcher: Optional[ExecutionDispatcher] = None,
    credentials: Optional[Credentials] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Agent:
    """Wire one agent around ``coordinator``; nothing is started."""
    bus = AgentBus()
    credentials = credentials or Credentials(
        token=settings.coordinator.token,
        user_id=settings.coordinator.user_id,
    )
    breakers = BreakerRegistry(settings.breaker, clock=clock)
    breaker = breakers.register(COORDINATOR_BREAKER)
    dispatcher = dispatcher or build_dispatcher(settings, breakers)
    runtime = AgentRuntime(
        agent_id=settings.agent_id,
        bus=bus,
        coordinator=coordinator,
        dispatcher=dispatcher,
        breaker=breaker,
        retry_policy=RetryPolicy.from_config(settings.retry),
        credentials=credentials,
        poll_interval_seconds=settings.runtime.poll_interval_seconds,
        max_concurrent_tasks=settings.runtime.max_concurrent_tasks,
        tick_seconds=settings.runtime.tick_seconds,
        clock=clock,
    )
    reporter = HealthReporter(
        runtime=runtime,
        bus=bus,
        coordinator=coordinator,
        breaker=breaker,
        credentials=credentials,
        heartbeat_interval_seconds=settings.health.heartbeat_interval_seconds,
        shutdown_grace_seconds=settings.health.shutdown_grace_seconds,
        tick_seconds=settings.runtime.tick_seconds,
        clock=clock,
    )
    return Agent(
        config=settings,
        bus=bus,
        coordinator=coordinator,
        credentials=credentials,
        breakers=breakers,
        dispatcher=dispatcher,
        runtime=runtime,
        reporter=reporter,
    )


@lru_cache
def get_coordinator() -> HttpCoordinatorClient:
    return HttpCoordinatorClient(config.coordinator)


@lru_cache
def get_agent() -> Agent:
    return build_agent(config, get_coordinator())

"""Tests for heartbeats and coordinated shutdown."""
from __future__ import annotations

import asyncio
import logging
import signal
from typing import Callable, List, Tuple

import pytest

from taskagent.agents.agent_runtime import AgentRuntime
from taskagent.agents.health import HealthReporter
from taskagent.core.message_bus import AgentBus
from taskagent.core.models import (
    AgentMessage,
    AgentStatus,
    Credentials,
    MessageKind,
    Task,
    TaskOutcome,
    TaskState,
)
from taskagent.handlers.base import Handler
from taskagent.orchestration.dispatcher import ExecutionDispatcher
from taskagent.services.circuit_breaker import CircuitBreaker
from taskagent.services.memory_coordinator import InMemoryCoordinator
from taskagent.services.retry import RetryPolicy
from taskagent.services.sandbox import ExecutionContext


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class TrackedContext(ExecutionContext):
    async def open(self) -> None:
        return None

    async def close(self) -> None:
        self.closed = True


class BlockingHandler(Handler):
    def __init__(self) -> None:
        self.contexts: List[ExecutionContext] = []

    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        self.contexts.append(context)
        await asyncio.Event().wait()
        return TaskOutcome.from_records([])


class FakeLoop:
    def __init__(self) -> None:
        self.handlers: List[Tuple[int, Callable[..., None]]] = []

    def add_signal_handler(self, signum: int, callback: Callable[..., None], *args: object) -> None:
        self.handlers.append((signum, callback))


def _agent(
    coordinator: InMemoryCoordinator,
    handler: Handler,
    *,
    token: str = "demo-token",
) -> Tuple[AgentRuntime, HealthReporter]:
    bus = AgentBus()
    breaker = CircuitBreaker("coordinator", failure_threshold=3, reset_timeout=0.05)
    credentials = Credentials(token=token or None)
    runtime = AgentRuntime(
        agent_id="agent-1",
        bus=bus,
        coordinator=coordinator,
        dispatcher=ExecutionDispatcher(handlers={("demo", "job"): handler}, context_factory=TrackedContext),
        breaker=breaker,
        retry_policy=RetryPolicy(max_retries=3, base_delay=0.01, jitter_ratio=0.0),
        credentials=credentials,
        tick_seconds=0.01,
    )
    reporter = HealthReporter(
        runtime=runtime,
        bus=bus,
        coordinator=coordinator,
        breaker=breaker,
        credentials=credentials,
        heartbeat_interval_seconds=60.0,
        shutdown_grace_seconds=0.05,
        tick_seconds=0.01,
    )
    return runtime, reporter


async def _eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _wait() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_wait(), timeout=timeout)


@pytest.mark.anyio
async def test_heartbeat_carries_health_and_metrics() -> None:
    coordinator = InMemoryCoordinator()
    runtime, reporter = _agent(coordinator, BlockingHandler())
    runtime.metrics.tasks_completed = 4

    assert await reporter.send_heartbeat() is True

    record = coordinator.heartbeats[-1]
    assert record.agent_id == "agent-1"
    assert record.health.status is AgentStatus.HEALTHY
    assert record.health.active_task_count == 0
    assert record.health.resources.rss_bytes > 0
    assert record.metrics.tasks_completed == 4
    assert reporter.heartbeats_sent == 1
    assert reporter.last_heartbeat_at is not None


@pytest.mark.anyio
async def test_heartbeat_skipped_without_credentials() -> None:
    coordinator = InMemoryCoordinator()
    _, reporter = _agent(coordinator, BlockingHandler(), token="")
    assert await reporter.send_heartbeat() is False
    assert coordinator.heartbeats == []


@pytest.mark.anyio
async def test_heartbeat_failure_is_logged(caplog: pytest.LogCaptureFixture) -> None:
    coordinator = InMemoryCoordinator()
    runtime, reporter = _agent(coordinator, BlockingHandler())
    coordinator.fail_next(1)

    with caplog.at_level(logging.WARNING, logger="taskagent.agents.health"):
        assert await reporter.send_heartbeat() is False
    assert "Heartbeat failed" in caplog.text
    assert runtime.status is AgentStatus.HEALTHY


@pytest.mark.anyio
async def test_status_change_triggers_immediate_heartbeat() -> None:
    coordinator = InMemoryCoordinator()
    runtime, reporter = _agent(coordinator, BlockingHandler())
    await reporter.start()
    await _eventually(lambda: len(coordinator.heartbeats) == 1)

    await runtime.send(
        AgentMessage(
            sender_id=runtime.component_id,
            recipient_id=None,
            kind=MessageKind.STATUS_CHANGED,
            payload={"status": "healthy", "previous": "unauthenticated"},
        ),
    )
    await _eventually(lambda: len(coordinator.heartbeats) == 2)
    await reporter.stop()


@pytest.mark.anyio
async def test_shutdown_drains_and_sends_final_heartbeat() -> None:
    coordinator = InMemoryCoordinator()
    handler = BlockingHandler()
    runtime, reporter = _agent(coordinator, handler)
    coordinator.issue(Task(id="t1", domain="demo", kind="job"))
    await runtime.start()
    await reporter.start()
    await _eventually(lambda: runtime.active_count == 1)

    summary = await reporter.shutdown()

    assert summary.aborted == ["t1"]
    assert handler.contexts[0].closed is True
    assert coordinator.state_of("t1") is TaskState.FAILED_PERMANENTLY
    assert coordinator.failure_of("t1")["reasonCode"] == "agent_shutdown"
    assert runtime.status_history == [AgentStatus.HEALTHY, AgentStatus.DRAINING, AgentStatus.STOPPED]
    assert coordinator.heartbeats[-1].health.status is AgentStatus.STOPPED
    assert not runtime.running
    assert not reporter.running

    # A second shutdown request is a no-op returning the same summary.
    assert await reporter.shutdown() is summary


@pytest.mark.anyio
async def test_signal_handlers_trigger_shutdown() -> None:
    coordinator = InMemoryCoordinator()
    runtime, reporter = _agent(coordinator, BlockingHandler())
    loop = FakeLoop()
    reporter.install_signal_handlers(loop)  # type: ignore[arg-type]
    assert [signum for signum, _ in loop.handlers] == [signal.SIGINT, signal.SIGTERM]

    await runtime.start()
    await reporter.start()
    reporter._on_signal(signal.SIGTERM)
    await asyncio.wait_for(reporter.wait_shutdown(), timeout=2)
    assert runtime.status is AgentStatus.STOPPED


@pytest.mark.anyio
async def test_rejected_heartbeat_moves_runtime_to_unauthenticated() -> None:
    coordinator = InMemoryCoordinator()
    runtime, reporter = _agent(coordinator, BlockingHandler())
    coordinator.revoke("demo-token")

    assert await reporter.send_heartbeat() is False

    assert runtime.status is AgentStatus.UNAUTHENTICATED
    assert runtime.last_error is not None
    assert reporter._credentials.is_present is False
    assert await runtime.poll_once() == 0
    assert coordinator.poll_calls == 0
    assert await reporter.send_heartbeat() is False
    assert coordinator.heartbeats == []

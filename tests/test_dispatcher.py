"""Tests for the execution dispatcher."""
from __future__ import annotations

import asyncio
import errno
from typing import List, Optional

import pytest

from taskagent.config import CircuitBreakerConfig
from taskagent.core.errors import (
    CircuitOpenError,
    ExecutionTimeoutError,
    HandlerCrashError,
    MalformedParametersError,
    NotApplicableError,
    ResourceExhaustedError,
    UnsupportedTaskError,
)
from taskagent.core.models import BreakerState, Task, TaskOutcome
from taskagent.handlers.base import Handler
from taskagent.handlers.echo import EchoHandler
from taskagent.orchestration.dispatcher import ExecutionDispatcher
from taskagent.services.circuit_breaker import BreakerRegistry
from taskagent.services.sandbox import ExecutionContext


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class RecordingContext(ExecutionContext):
    def __init__(self, task: Task, *, open_error: Optional[Exception] = None) -> None:
        super().__init__(task)
        self.opened = False
        self._open_error = open_error

    async def open(self) -> None:
        if self._open_error is not None:
            raise self._open_error
        self.opened = True

    async def close(self) -> None:
        self.closed = True


class ContextFactory:
    def __init__(self, **kwargs) -> None:
        self.created: List[RecordingContext] = []
        self._kwargs = kwargs

    def __call__(self, task: Task) -> ExecutionContext:
        context = RecordingContext(task, **self._kwargs)
        self.created.append(context)
        return context


class SlowHandler(Handler):
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        await asyncio.sleep(10)
        return TaskOutcome.from_records([])


class CrashingHandler(Handler):
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        raise ValueError("selector not found")


class AlreadyAppliedHandler(Handler):
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        raise NotApplicableError("already applied")


class WrongResultHandler(Handler):
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        return {"not": "an outcome"}  # type: ignore[return-value]


class NeedsUrlHandler(Handler):
    required_parameters = ("url",)

    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        return TaskOutcome.from_receipt({"url": task.parameters["url"]})


def _dispatcher(handler: Handler, factory: ContextFactory, timeout: float = 1.0) -> ExecutionDispatcher:
    return ExecutionDispatcher(
        handlers={("demo", "job"): handler},
        context_factory=factory,
        task_timeout_seconds=timeout,
    )


def _task(**parameters) -> Task:
    return Task(id="t1", domain="demo", kind="job", parameters=parameters)


@pytest.mark.anyio
async def test_unknown_route_is_unsupported_without_allocating_context() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(EchoHandler(min_delay=0, max_delay=0), factory)

    with pytest.raises(UnsupportedTaskError) as info:
        await dispatcher.dispatch(Task(id="t1", domain="mystery", kind="scrape"))
    assert info.value.retryable is False
    assert factory.created == []


@pytest.mark.anyio
async def test_missing_required_parameters_are_malformed() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(NeedsUrlHandler(), factory)

    with pytest.raises(MalformedParametersError):
        await dispatcher.dispatch(_task())
    outcome = await dispatcher.dispatch(_task(url="https://example.com"))
    assert outcome.receipt == {"url": "https://example.com"}


@pytest.mark.anyio
async def test_timeout_tears_down_context() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(SlowHandler(), factory, timeout=0.05)

    with pytest.raises(ExecutionTimeoutError) as info:
        await dispatcher.dispatch(_task())
    assert info.value.retryable is True
    assert factory.created[0].closed is True


@pytest.mark.anyio
async def test_handler_crash_is_wrapped_as_retryable() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(CrashingHandler(), factory)

    with pytest.raises(HandlerCrashError) as info:
        await dispatcher.dispatch(_task())
    assert "selector not found" in str(info.value)
    assert info.value.retryable is True
    assert factory.created[0].closed is True


@pytest.mark.anyio
async def test_task_errors_pass_through_unchanged() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(AlreadyAppliedHandler(), factory)

    with pytest.raises(NotApplicableError):
        await dispatcher.dispatch(_task())
    assert factory.created[0].closed is True


@pytest.mark.anyio
async def test_non_outcome_result_is_a_crash() -> None:
    dispatcher = _dispatcher(WrongResultHandler(), ContextFactory())
    with pytest.raises(HandlerCrashError):
        await dispatcher.dispatch(_task())


@pytest.mark.anyio
async def test_each_dispatch_gets_a_fresh_context() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(EchoHandler(min_delay=0, max_delay=0), factory)

    await dispatcher.dispatch(_task())
    await dispatcher.dispatch(_task())
    assert len(factory.created) == 2
    assert factory.created[0] is not factory.created[1]
    assert all(context.opened and context.closed for context in factory.created)


@pytest.mark.anyio
async def test_cancellation_closes_context() -> None:
    factory = ContextFactory()
    dispatcher = _dispatcher(SlowHandler(), factory, timeout=30.0)

    running = asyncio.create_task(dispatcher.dispatch(_task()))
    await asyncio.sleep(0.01)
    running.cancel()
    with pytest.raises(asyncio.CancelledError):
        await running
    assert factory.created[0].closed is True


@pytest.mark.anyio
async def test_context_allocation_failures() -> None:
    exhausted = _dispatcher(EchoHandler(), ContextFactory(open_error=OSError(errno.ENOSPC, "No space left")))
    with pytest.raises(ResourceExhaustedError):
        await exhausted.dispatch(_task())

    broken = _dispatcher(EchoHandler(), ContextFactory(open_error=RuntimeError("no browser")))
    with pytest.raises(HandlerCrashError):
        await broken.dispatch(_task())


def test_capabilities_are_sorted_routes() -> None:
    dispatcher = ExecutionDispatcher(context_factory=ContextFactory())
    dispatcher.register("demo", "echo", EchoHandler())
    dispatcher.register_many(("web", "blog"), "detail", NeedsUrlHandler())
    assert dispatcher.capabilities() == ["blog:detail", "demo:echo", "web:detail"]
    assert dispatcher.supports(Task(id="t", domain="web", kind="detail"))
    assert not dispatcher.supports(Task(id="t", domain="web", kind="apply"))


class NestedCircuitHandler(Handler):
    async def handle(self, task: Task, context: ExecutionContext) -> TaskOutcome:
        raise CircuitOpenError("search-api", 4.0)


@pytest.mark.anyio
async def test_domain_circuit_trips_on_crashes_but_not_on_terminal_answers() -> None:
    breakers = BreakerRegistry(CircuitBreakerConfig(failure_threshold=2, reset_timeout_seconds=60.0))
    dispatcher = ExecutionDispatcher(
        handlers={("web", "gone"): AlreadyAppliedHandler(), ("web", "crash"): CrashingHandler()},
        context_factory=ContextFactory(),
        breakers=breakers,
    )

    for index in range(3):
        with pytest.raises(NotApplicableError):
            await dispatcher.dispatch(Task(id=f"g{index}", domain="web", kind="gone"))
    assert breakers.get("web").state is BreakerState.CLOSED

    for index in range(2):
        with pytest.raises(HandlerCrashError):
            await dispatcher.dispatch(Task(id=f"c{index}", domain="web", kind="crash"))
    assert breakers.get("web").state is BreakerState.OPEN

    with pytest.raises(CircuitOpenError):
        await dispatcher.dispatch(Task(id="g9", domain="web", kind="gone"))


@pytest.mark.anyio
async def test_circuit_rejection_from_handler_is_not_wrapped() -> None:
    factory = ContextFactory()
    dispatcher = ExecutionDispatcher(handlers={("web", "detail"): NestedCircuitHandler()}, context_factory=factory)

    with pytest.raises(CircuitOpenError) as info:
        await dispatcher.dispatch(Task(id="t1", domain="web", kind="detail"))
    assert info.value.retry_in == 4.0
    assert factory.created[0].closed is True

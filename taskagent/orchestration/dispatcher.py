"""Dispatcher mapping tasks to handlers and running them in isolation."""
from __future__ import annotations

import asyncio
import errno
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from taskagent.core.errors import (
    CircuitOpenError,
    ExecutionTimeoutError,
    HandlerCrashError,
    MalformedParametersError,
    ResourceExhaustedError,
    TaskError,
    TerminalTaskError,
    UnsupportedTaskError,
)
from taskagent.core.models import Task, TaskOutcome
from taskagent.handlers.base import Handler
from taskagent.services.circuit_breaker import BreakerRegistry
from taskagent.services.sandbox import ContextFactory, sandbox_factory

logger = logging.getLogger(__name__)

Route = Tuple[str, str]

_EXHAUSTION_ERRNOS = frozenset({errno.ENOSPC, errno.EMFILE, errno.ENFILE, errno.ENOMEM})

# Terminal errors mean the target answered; they never trip its circuit.
_TARGET_ANSWERED = (TerminalTaskError,)


class ExecutionDispatcher:
    """Run each task through its registered handler inside a fresh context."""

    def __init__(
        self,
        *,
        handlers: Optional[Mapping[Route, Handler]] = None,
        context_factory: Optional[ContextFactory] = None,
        task_timeout_seconds: float = 300.0,
        breakers: Optional[BreakerRegistry] = None,
    ) -> None:
        self._handlers: Dict[Route, Handler] = dict(handlers or {})
        self._context_factory = context_factory or sandbox_factory()
        self._breakers = breakers
        self.task_timeout_seconds = task_timeout_seconds

    def register(self, domain: str, kind: str, handler: Handler) -> None:
        self._handlers[(domain, kind)] = handler

    def register_many(self, domains: Iterable[str], kind: str, handler: Handler) -> None:
        for domain in domains:
            self.register(domain, kind, handler)

    def capabilities(self) -> List[str]:
        return sorted(f"{domain}:{kind}" for domain, kind in self._handlers)

    def supports(self, task: Task) -> bool:
        return task.route in self._handlers

    async def dispatch(self, task: Task) -> TaskOutcome:
        """Execute ``task`` once and return its outcome.

        Raises a ``TaskError``, ``ResourceExhaustedError`` when no context
        can be allocated, or ``CircuitOpenError`` when the circuit of the
        task's domain rejects the call; anything else a handler throws is
        wrapped in a retryable ``HandlerCrashError``. The execution context
        is closed on every exit path, including cancellation.
        """
        handler = self._resolve_handler(task)
        missing = [name for name in handler.required_parameters if name not in task.parameters]
        if missing:
            raise MalformedParametersError(
                f"Task {task.id} is missing required parameters: {', '.join(missing)}",
            )

        context = self._context_factory(task)
        try:
            try:
                await context.open()
            except MemoryError as exc:
                raise ResourceExhaustedError(f"Out of memory allocating execution context: {exc}") from exc
            except OSError as exc:
                if exc.errno in _EXHAUSTION_ERRNOS:
                    raise ResourceExhaustedError(f"Could not allocate execution context: {exc}") from exc
                raise HandlerCrashError(f"Could not allocate execution context: {exc}") from exc
            except Exception as exc:  # noqa: BLE001
                raise HandlerCrashError(f"Could not allocate execution context: {exc}") from exc
            try:
                outcome = await self._guarded(
                    task,
                    lambda: asyncio.wait_for(handler.handle(task, context), timeout=self.task_timeout_seconds),
                )
            except asyncio.TimeoutError as exc:
                raise ExecutionTimeoutError(task.id, self.task_timeout_seconds) from exc
            except (TaskError, CircuitOpenError):
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Handler for %s/%s crashed on task %s", task.domain, task.kind, task.id)
                raise HandlerCrashError(f"{type(exc).__name__}: {exc}") from exc
        finally:
            await asyncio.shield(context.close())

        if not isinstance(outcome, TaskOutcome):
            raise HandlerCrashError(
                f"Handler for {task.domain}/{task.kind} returned {type(outcome).__name__}, expected TaskOutcome",
            )
        return outcome

    async def _guarded(self, task: Task, run: Callable[[], Awaitable[Any]]) -> Any:
        if self._breakers is None:
            return await run()
        breaker = self._breakers.get_or_create(task.domain, excluded=_TARGET_ANSWERED)
        return await breaker.execute(run)

    def _resolve_handler(self, task: Task) -> Handler:
        handler = self._handlers.get(task.route)
        if handler is None:
            raise UnsupportedTaskError(task.domain, task.kind)
        return handler

"""Agent control loop: poll, enqueue, dispatch, retry and report."""
from __future__ import annotations

import asyncio
import logging
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from taskagent.agents.base import Service
from taskagent.core.errors import (
    AgentFatalError,
    AuthenticationError,
    CircuitOpenError,
    CoordinatorError,
    CoordinatorRequestError,
    ShutdownAbortError,
)
from taskagent.core.message_bus import AgentBus
from taskagent.core.models import (
    AgentMessage,
    AgentStatus,
    Credentials,
    MessageKind,
    Metrics,
    QueueEntry,
    RuntimePhase,
    Task,
    TaskOutcome,
)
from taskagent.core.task_queue import TaskQueue
from taskagent.orchestration.dispatcher import ExecutionDispatcher
from taskagent.services.circuit_breaker import CircuitBreaker
from taskagent.services.coordinator import Coordinator
from taskagent.services.retry import FailureClass, FailureClassification, RetryPolicy, classify_failure

logger = logging.getLogger(__name__)

_FINISHED_MEMORY = 1024


@dataclass(slots=True)
class PendingReport:
    """Outcome waiting to be delivered to the coordinator."""

    task_id: str
    outcome: Optional[TaskOutcome] = None
    reason: Optional[Dict[str, Any]] = None

    @property
    def is_success(self) -> bool:
        return self.outcome is not None


@dataclass(slots=True)
class DrainSummary:
    """What happened to local work during a shutdown."""

    finished_in_grace: int = 0
    aborted: List[str] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)
    unreported: int = 0


class AgentRuntime(Service):
    """Single logical control loop owning its queue, metrics and outbox.

    Polls run inside the loop coroutine, so at most one poll is in flight.
    Task executions run as separate asyncio tasks, bounded by the queue's
    in-flight ceiling.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent_id: str,
        bus: AgentBus,
        coordinator: Coordinator,
        dispatcher: ExecutionDispatcher,
        breaker: CircuitBreaker,
        retry_policy: RetryPolicy,
        credentials: Optional[Credentials] = None,
        poll_interval_seconds: float = 60.0,
        max_concurrent_tasks: int = 1,
        tick_seconds: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(f"{agent_id}/runtime", bus, tick_seconds=tick_seconds)
        self.agent_id = agent_id
        self.poll_interval_seconds = poll_interval_seconds
        self.max_concurrent_tasks = max_concurrent_tasks
        self.queue = TaskQueue(max_in_flight=max_concurrent_tasks, clock=clock)
        self.metrics = Metrics(started_at=clock())
        self.max_active_observed = 0
        self._coordinator = coordinator
        self._dispatcher = dispatcher
        self._breaker = breaker
        self._retry_policy = retry_policy
        self._credentials = credentials or Credentials()
        self._clock = clock
        self._status = AgentStatus.HEALTHY if self._credentials.is_present else AgentStatus.UNAUTHENTICATED
        self.status_history: List[AgentStatus] = [self._status]
        self._polling = False
        self._paused = False
        self._registered = False
        self._draining = False
        self._last_poll_at: Optional[float] = None
        self._poll_task: Optional[asyncio.Task[int]] = None
        self._active: Dict[str, QueueEntry] = {}
        self._workers: Set[asyncio.Task[None]] = set()
        self._retry_timers: Dict[str, asyncio.TimerHandle] = {}
        self._retry_pending: Dict[str, Task] = {}
        self._aborted: List[Task] = []
        self._outbox: Deque[PendingReport] = deque()
        self._flush_lock = asyncio.Lock()
        self._finished: "OrderedDict[str, None]" = OrderedDict()

    # -- observable state -------------------------------------------------

    @property
    def status(self) -> AgentStatus:
        return self._status

    @property
    def phase(self) -> RuntimePhase:
        if self._active:
            return RuntimePhase.EXECUTING
        if self._polling:
            return RuntimePhase.POLLING
        return RuntimePhase.IDLE

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def registered(self) -> bool:
        return self._registered

    @property
    def outbox_size(self) -> int:
        return len(self._outbox)

    def retry_pending_ids(self) -> List[str]:
        return list(self._retry_pending)

    def describe(self) -> Dict[str, Any]:
        """Status view served by the HTTP surface."""
        return {
            "agent_id": self.agent_id,
            "status": self._status.value,
            "phase": self.phase.value,
            "paused": self._paused,
            "registered": self._registered,
            "queue_size": self.queue.size(),
            "active_tasks": [
                {
                    "id": entry.task.id,
                    "domain": entry.task.domain,
                    "kind": entry.task.kind,
                    "attempts": entry.task.attempts,
                    "started_at": entry.started_at,
                }
                for entry in self._active.values()
            ],
            "retry_pending": self.retry_pending_ids(),
            "outbox_size": len(self._outbox),
            "last_error": self.last_error,
        }

    # -- loop hooks -------------------------------------------------------

    async def on_start(self) -> None:
        await self.poll_once()

    async def on_idle(self) -> None:
        if self._poll_due():
            await self.poll_once()

    async def handle_message(self, message: AgentMessage) -> None:
        if message.kind is MessageKind.POLL_NOW:
            await self.poll_once()
        if self._poll_due():
            await self.poll_once()

    async def on_stop(self) -> None:
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
        workers = [worker for worker in self._workers if not worker.done()]
        for worker in workers:
            worker.cancel()
        if workers:
            await asyncio.gather(*workers, return_exceptions=True)

    # -- polling ----------------------------------------------------------

    def _poll_due(self) -> bool:
        if self._status is not AgentStatus.HEALTHY:
            return False
        if self._last_poll_at is None:
            return True
        return self._clock() - self._last_poll_at >= self.poll_interval_seconds

    async def poll_once(self) -> int:
        """Ask the coordinator for work; returns the number of tasks accepted.

        Runs as its own asyncio task so a shutdown can cancel it without
        cancelling the caller.
        """
        if self._status is not AgentStatus.HEALTHY:
            return 0
        self._last_poll_at = self._clock()
        self._poll_task = asyncio.create_task(self._poll(), name=f"{self.agent_id}-poll")
        await asyncio.wait({self._poll_task})
        poll_task, self._poll_task = self._poll_task, None
        if poll_task.cancelled():
            logger.info("Poll cancelled for agent %s", self.agent_id)
            return 0
        return poll_task.result()

    async def _poll(self) -> int:
        if not await self._ensure_registered():
            return 0
        await self._flush_outbox()
        if self._status is not AgentStatus.HEALTHY:
            return 0

        self._polling = True
        try:
            tasks = await self._breaker.execute(
                lambda: self._coordinator.poll_tasks(self.agent_id, self._credentials),
            )
        except CircuitOpenError as exc:
            logger.info("Skipping poll: %s", exc)
            return 0
        except AgentFatalError as exc:
            await self._handle_fatal(exc)
            return 0
        except CoordinatorError as exc:
            logger.warning("Failed to fetch tasks: %s", exc)
            return 0
        except Exception:  # noqa: BLE001
            logger.exception("Unexpected error while polling coordinator")
            return 0
        finally:
            self._polling = False

        accepted = sum(1 for task in tasks if self.offer(task))
        if tasks:
            logger.info("Received %d tasks from coordinator, accepted %d", len(tasks), accepted)
        self._pump()
        return accepted

    async def _ensure_registered(self) -> bool:
        if self._registered:
            return True
        if not self._credentials.is_present:
            await self._set_status(AgentStatus.UNAUTHENTICATED)
            return False
        try:
            await self._breaker.execute(
                lambda: self._coordinator.register_agent(
                    self.agent_id,
                    self._dispatcher.capabilities(),
                    self._credentials,
                ),
            )
        except CircuitOpenError as exc:
            logger.info("Registration deferred: %s", exc)
            return False
        except AgentFatalError as exc:
            await self._handle_fatal(exc)
            return False
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Failed to register agent %s: %s; retrying in %.0fs",
                self.agent_id,
                exc,
                self.poll_interval_seconds,
            )
            return False
        self._registered = True
        return True

    # -- queueing and dispatch --------------------------------------------

    def offer(self, task: Task) -> bool:
        """Enqueue a delivered task unless it duplicates local work."""
        if self._status is not AgentStatus.HEALTHY:
            logger.warning(
                "Dropping task %s delivered while agent %s is %s; it stays claimed until the coordinator expires it",
                task.id,
                self.agent_id,
                self._status.value,
            )
            return False
        if task.id in self._finished or task.id in self._retry_pending or self.queue.contains(task.id):
            logger.debug("Ignoring duplicate delivery of task %s", task.id)
            return False
        return self.queue.enqueue(task)

    def pause(self) -> None:
        if not self._paused:
            logger.info("Agent %s paused", self.agent_id)
        self._paused = True

    def resume(self) -> None:
        if self._paused:
            logger.info("Agent %s resumed", self.agent_id)
        self._paused = False
        self._pump()

    def _pump(self) -> None:
        if self._paused or self._status is not AgentStatus.HEALTHY:
            return
        while True:
            entry = self.queue.dequeue_next()
            if entry is None:
                return
            self._start(entry)

    def _start(self, entry: QueueEntry) -> None:
        task = entry.task
        self._active[task.id] = entry
        self.max_active_observed = max(self.max_active_observed, len(self._active))
        self.metrics.touch()
        logger.info(
            "Processing task %s (%s - %s), attempt %d",
            task.id,
            task.domain,
            task.kind,
            task.attempts + 1,
        )
        worker = asyncio.create_task(self._execute(entry), name=f"task-{task.id}")
        self._workers.add(worker)
        worker.add_done_callback(self._workers.discard)

    async def _execute(self, entry: QueueEntry) -> None:
        task = entry.task
        started = self._clock()
        outcome: Optional[TaskOutcome] = None
        error: Optional[Exception] = None
        try:
            outcome = await self._dispatcher.dispatch(task)
        except asyncio.CancelledError:
            if self._draining:
                self._aborted.append(task)
            raise
        except Exception as exc:  # noqa: BLE001
            error = exc
        finally:
            self.metrics.record_latency(self._clock() - started)
            self.queue.complete(task.id)
            self._active.pop(task.id, None)

        if error is None and outcome is not None:
            await self._handle_success(task, outcome)
        elif error is not None:
            await self._handle_failure(task, error)

        if not self._draining:
            self._pump()
            await self._request_poll()

    async def _handle_success(self, task: Task, outcome: TaskOutcome) -> None:
        self.metrics.tasks_completed += 1
        self._remember_finished(task.id)
        logger.info("Task %s completed", task.id)
        await self._report(PendingReport(task_id=task.id, outcome=outcome))

    async def _handle_failure(self, task: Task, error: Exception) -> None:
        decision = self._retry_policy.decide(task, error)
        if decision.classification.failure_class is FailureClass.TIMEOUT:
            self.metrics.tasks_timed_out += 1
        if decision.retry and not self._draining and not decision.counts_attempt:
            logger.info("Task %s deferred for %.1fs: %s", task.id, decision.delay_seconds, error)
            self._schedule_retry(task, decision.delay_seconds)
            return
        if decision.retry and not self._draining:
            retry = task.next_attempt()
            self.metrics.tasks_retried += 1
            logger.warning(
                "Task %s failed (%s); retry %d/%d in %.1fs",
                task.id,
                decision.classification.reason_code,
                retry.attempts,
                self._retry_policy.max_retries,
                decision.delay_seconds,
            )
            self._schedule_retry(retry, decision.delay_seconds)
            return
        logger.error("Task %s failed permanently: %s", task.id, error)
        await self._fail_permanently(task, decision.classification, executed=decision.counts_attempt)
        if isinstance(error, AgentFatalError):
            await self._handle_fatal(error)

    async def _fail_permanently(
        self,
        task: Task,
        classification: FailureClassification,
        *,
        executed: bool = True,
    ) -> None:
        self.metrics.tasks_failed += 1
        self._remember_finished(task.id)
        reason = classification.to_reason()
        reason["attempts"] = task.attempts + 1 if executed else task.attempts
        await self._report(PendingReport(task_id=task.id, reason=reason))

    def _schedule_retry(self, task: Task, delay: float) -> None:
        loop = asyncio.get_running_loop()
        self._retry_pending[task.id] = task
        self._retry_timers[task.id] = loop.call_later(delay, self._requeue, task.id)

    def _requeue(self, task_id: str) -> None:
        self._retry_timers.pop(task_id, None)
        task = self._retry_pending.pop(task_id, None)
        if task is None or self._draining:
            return
        if not self.queue.enqueue(task):
            logger.warning("Retry of task %s dropped: id already queued", task_id)
            return
        self._pump()

    def _remember_finished(self, task_id: str) -> None:
        self._finished[task_id] = None
        self._finished.move_to_end(task_id)
        while len(self._finished) > _FINISHED_MEMORY:
            self._finished.popitem(last=False)

    async def _request_poll(self) -> None:
        if self._status is not AgentStatus.HEALTHY:
            return
        await self.send(
            AgentMessage(
                sender_id=self.component_id,
                recipient_id=self.component_id,
                kind=MessageKind.POLL_NOW,
            ),
        )

    # -- reporting --------------------------------------------------------

    async def _report(self, pending: PendingReport) -> None:
        self._outbox.append(pending)
        await self._flush_outbox()

    async def _flush_outbox(self) -> None:
        """Deliver queued reports in order; stops at the first transient error."""
        async with self._flush_lock:
            while self._outbox and self._credentials.is_present:
                pending = self._outbox[0]
                try:
                    await self._breaker.execute(lambda p=pending: self._send_report(p))
                except CircuitOpenError as exc:
                    logger.info("Report for task %s deferred: %s", pending.task_id, exc)
                    return
                except AgentFatalError as exc:
                    await self._handle_fatal(exc)
                    return
                except CoordinatorRequestError as exc:
                    logger.error("Coordinator refused report for task %s: %s", pending.task_id, exc)
                    self._outbox.popleft()
                    continue
                except CoordinatorError as exc:
                    logger.warning("Report for task %s deferred: %s", pending.task_id, exc)
                    return
                except Exception:  # noqa: BLE001
                    logger.exception("Unexpected error reporting task %s", pending.task_id)
                    return
                self._outbox.popleft()

    async def _send_report(self, pending: PendingReport) -> None:
        if pending.outcome is not None:
            await self._coordinator.report_success(pending.task_id, pending.outcome, self._credentials)
        else:
            await self._coordinator.report_failure(pending.task_id, pending.reason or {}, self._credentials)

    # -- status transitions -----------------------------------------------

    async def _set_status(self, status: AgentStatus) -> None:
        previous = self._status
        if previous is status:
            return
        self._status = status
        self.status_history.append(status)
        logger.info("Agent %s status %s -> %s", self.agent_id, previous.value, status.value)
        await self.send(
            AgentMessage(
                sender_id=self.component_id,
                recipient_id=None,
                kind=MessageKind.STATUS_CHANGED,
                payload={"status": status.value, "previous": previous.value},
            ),
        )

    async def _handle_fatal(self, error: AgentFatalError) -> None:
        self.last_error = str(error)
        if isinstance(error, AuthenticationError):
            logger.error("Coordinator rejected credentials for agent %s; polling halted", self.agent_id)
            self._credentials.clear()
            self._registered = False
            if not self._draining:
                await self._set_status(AgentStatus.UNAUTHENTICATED)
            return
        logger.error("Fatal agent error: %s; polling halted", error)
        await self._set_status(AgentStatus.STOPPED)

    async def on_auth_rejected(self, error: AuthenticationError) -> None:
        """Enter the unauthenticated state after another component saw a 401/403."""
        if not self._credentials.is_present and self._status is AgentStatus.UNAUTHENTICATED:
            return
        await self._handle_fatal(error)

    async def authenticate(self, credentials: Credentials) -> None:
        """Install new credentials and resume polling."""
        self._credentials.token = credentials.token
        self._credentials.user_id = credentials.user_id
        self._registered = False
        self._last_poll_at = None
        self.last_error = None
        if self._status is AgentStatus.UNAUTHENTICATED:
            await self._set_status(AgentStatus.HEALTHY)
        if self.running:
            await self._request_poll()

    async def logout(self) -> List[str]:
        """Forget credentials and drop local work that has not started."""
        dropped = [task.id for task in self.queue.drain_pending()]
        for handle in self._retry_timers.values():
            handle.cancel()
        dropped.extend(self._retry_pending)
        self._retry_timers.clear()
        self._retry_pending.clear()
        self._credentials.clear()
        self._registered = False
        if not self._draining:
            await self._set_status(AgentStatus.UNAUTHENTICATED)
        logger.info("Agent %s logged out, dropped %d queued tasks", self.agent_id, len(dropped))
        return dropped

    # -- shutdown ---------------------------------------------------------

    async def wait_idle(self, timeout: Optional[float] = None) -> None:
        """Wait until nothing is queued, executing, reporting or pending retry."""

        async def _settled() -> None:
            while self._workers or self._retry_pending or self.queue.size():
                await asyncio.sleep(0.01)

        await asyncio.wait_for(_settled(), timeout=timeout)

    async def drain(self, grace_seconds: float = 5.0) -> DrainSummary:
        """Stop taking work, give in-flight tasks ``grace_seconds``, then stop.

        Executions still running after the grace period are cancelled (their
        contexts are torn down by the dispatcher) and reported as permanent
        shutdown failures, as are queued and retry-pending tasks.
        """
        summary = DrainSummary()
        if self._draining:
            return summary
        self._draining = True
        await self._set_status(AgentStatus.DRAINING)

        if self._poll_task is not None and not self._poll_task.done():
            self._poll_task.cancel()
        for handle in self._retry_timers.values():
            handle.cancel()
        self._retry_timers.clear()
        not_started = self.queue.drain_pending() + list(self._retry_pending.values())
        self._retry_pending.clear()

        workers = set(self._workers)
        if workers:
            done, pending = await asyncio.wait(workers, timeout=grace_seconds)
            summary.finished_in_grace = len(done)
            for worker in pending:
                worker.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for task in self._aborted:
            summary.aborted.append(task.id)
            await self._fail_permanently(
                task,
                classify_failure(ShutdownAbortError(f"Agent {self.agent_id} shut down during execution")),
            )
        self._aborted.clear()

        for task in not_started:
            summary.not_started.append(task.id)
            self._remember_finished(task.id)
            reason = classify_failure(
                ShutdownAbortError(f"Agent {self.agent_id} shut down before task started"),
            ).to_reason()
            reason["attempts"] = task.attempts
            await self._report(PendingReport(task_id=task.id, reason=reason))

        await self._flush_outbox()
        summary.unreported = len(self._outbox)
        if summary.unreported:
            logger.warning("Agent %s stopping with %d unreported results", self.agent_id, summary.unreported)

        await self._set_status(AgentStatus.STOPPED)
        if self._runner is not None and asyncio.current_task() is not self._runner:
            await self.stop()
        else:
            self._stop_event.set()
        logger.info(
            "Agent %s stopped: %d finished in grace, %d aborted, %d not started",
            self.agent_id,
            summary.finished_in_grace,
            len(summary.aborted),
            len(summary.not_started),
        )
        return summary

"""In-process coordinator used by the demo and the test-suite."""
from __future__ import annotations

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence

from taskagent.core.errors import AuthenticationError, CoordinatorUnavailableError
from taskagent.core.models import (
    AgentHealth,
    Credentials,
    MetricsSnapshot,
    Task,
    TaskOutcome,
    TaskState,
)


_TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED_PERMANENTLY, TaskState.EXPIRED})

@dataclass(slots=True)
class IssuedTask:
    task: Task
    state: TaskState = TaskState.ISSUED
    claimed_by: Optional[str] = None
    outcome: Optional[TaskOutcome] = None
    failure: Optional[Dict[str, Any]] = None


@dataclass(slots=True)
class HeartbeatRecord:
    agent_id: str
    health: AgentHealth
    metrics: MetricsSnapshot


@dataclass(slots=True)
class _Accounts:
    users: Dict[str, str] = field(default_factory=dict)
    tokens: Dict[str, str] = field(default_factory=dict)


class InMemoryCoordinator:
    """Coordinator that keeps every task and report in memory.

    Reports are idempotent: the first success or failure for a task id sets
    its terminal state and later reports are counted but have no effect.
    """

    def __init__(self, *, valid_tokens: Sequence[str] = ("demo-token",), latency: float = 0.0) -> None:
        self._accounts = _Accounts(tokens={token: "demo-user" for token in valid_tokens})
        self._latency = latency
        self._tasks: Dict[str, IssuedTask] = {}
        self._backlog: Deque[str] = deque()
        self._outages = 0
        self.registrations: Dict[str, List[str]] = {}
        self.heartbeats: List[HeartbeatRecord] = []
        self.report_calls: Dict[str, int] = {}
        self.poll_calls = 0

    def add_user(self, username: str, password: str) -> None:
        self._accounts.users[username] = password

    def issue(self, task: Task) -> None:
        self._tasks[task.id] = IssuedTask(task=task)
        self._backlog.append(task.id)

    def redeliver(self, task_id: str) -> None:
        """Put a claimed task back on the backlog to simulate duplicate delivery."""
        self._backlog.append(task_id)

    def expire(self, task_id: str) -> None:
        """Mark a task expired; later deliveries and reports are ignored."""
        issued = self._tasks[task_id]
        if issued.state not in _TERMINAL_STATES:
            issued.state = TaskState.EXPIRED

    def fail_next(self, calls: int) -> None:
        """Make the next ``calls`` coordinator calls raise an outage error."""
        self._outages = calls

    def revoke(self, token: str) -> None:
        self._accounts.tokens.pop(token, None)

    def state_of(self, task_id: str) -> TaskState:
        return self._tasks[task_id].state

    def outcome_of(self, task_id: str) -> Optional[TaskOutcome]:
        return self._tasks[task_id].outcome

    def failure_of(self, task_id: str) -> Optional[Dict[str, Any]]:
        return self._tasks[task_id].failure

    async def register_agent(
        self, agent_id: str, capabilities: Sequence[str], credentials: Credentials
    ) -> None:
        await self._enter(credentials)
        self.registrations[agent_id] = list(capabilities)

    async def poll_tasks(self, agent_id: str, credentials: Credentials) -> List[Task]:
        await self._enter(credentials)
        self.poll_calls += 1
        delivered: List[Task] = []
        while self._backlog:
            issued = self._tasks[self._backlog.popleft()]
            if issued.state not in (TaskState.ISSUED, TaskState.CLAIMED):
                continue
            issued.state = TaskState.CLAIMED
            issued.claimed_by = agent_id
            delivered.append(issued.task)
        return delivered

    async def report_success(
        self, task_id: str, outcome: TaskOutcome, credentials: Credentials
    ) -> None:
        await self._enter(credentials)
        self.report_calls[task_id] = self.report_calls.get(task_id, 0) + 1
        issued = self._tasks.get(task_id)
        if issued is None or issued.state in _TERMINAL_STATES:
            return
        issued.state = TaskState.COMPLETED
        issued.outcome = outcome

    async def report_failure(
        self, task_id: str, reason: Dict[str, Any], credentials: Credentials
    ) -> None:
        await self._enter(credentials)
        self.report_calls[task_id] = self.report_calls.get(task_id, 0) + 1
        issued = self._tasks.get(task_id)
        if issued is None or issued.state in _TERMINAL_STATES:
            return
        issued.state = TaskState.FAILED_PERMANENTLY
        issued.failure = dict(reason)

    async def send_heartbeat(
        self,
        agent_id: str,
        health: AgentHealth,
        metrics: MetricsSnapshot,
        credentials: Credentials,
    ) -> None:
        await self._enter(credentials)
        self.heartbeats.append(HeartbeatRecord(agent_id=agent_id, health=health, metrics=metrics))

    async def login(self, username: str, password: str) -> Credentials:
        await self._enter(None)
        if self._accounts.users.get(username) != password:
            raise AuthenticationError("Invalid username or password", status_code=401)
        token = uuid.uuid4().hex
        self._accounts.tokens[token] = username
        return Credentials(token=token, user_id=username)

    async def _enter(self, credentials: Optional[Credentials]) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._outages > 0:
            self._outages -= 1
            raise CoordinatorUnavailableError("Simulated coordinator outage", status_code=503)
        if credentials is not None and credentials.token not in self._accounts.tokens:
            raise AuthenticationError("Coordinator rejected credentials", status_code=401)

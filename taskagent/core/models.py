"""Core data models shared across agent components."""
from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TaskState(str, Enum):
    """Coordinator-side lifecycle of a task."""

    ISSUED = "issued"
    CLAIMED = "claimed"
    COMPLETED = "completed"
    FAILED_PERMANENTLY = "failed-permanently"
    EXPIRED = "expired"


@dataclass(frozen=True, slots=True)
class Task:
    """Work descriptor issued by the coordinator.

    The agent never mutates a task; a retry works on the copy returned by
    ``next_attempt``.
    """

    id: str
    domain: str
    kind: str
    parameters: Mapping[str, Any] = field(default_factory=dict)
    attempts: int = 0
    issued_at: datetime = field(default_factory=utc_now)
    priority: int = 0

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Task id must not be empty")
        if self.attempts < 0:
            raise ValueError("Task attempts must be >= 0")
        object.__setattr__(self, "parameters", MappingProxyType(dict(self.parameters)))

    @property
    def route(self) -> tuple[str, str]:
        return (self.domain, self.kind)

    def next_attempt(self) -> Task:
        return replace(self, parameters=dict(self.parameters), attempts=self.attempts + 1)


@dataclass(slots=True)
class QueueEntry:
    """A task plus local scheduling metadata."""

    task: Task
    sequence: int
    enqueued_at: float
    started_at: Optional[float] = None

    @property
    def task_id(self) -> str:
        return self.task.id


class OutcomeKind(str, Enum):
    RECORDS = "records"
    RECEIPT = "receipt"


@dataclass(slots=True)
class TaskOutcome:
    """Structured result returned by a handler."""

    kind: OutcomeKind
    records: List[Dict[str, Any]] = field(default_factory=list)
    receipt: Optional[Dict[str, Any]] = None
    completed_at: datetime = field(default_factory=utc_now)

    @classmethod
    def from_records(cls, records: List[Dict[str, Any]]) -> TaskOutcome:
        return cls(kind=OutcomeKind.RECORDS, records=list(records))

    @classmethod
    def from_receipt(cls, receipt: Dict[str, Any]) -> TaskOutcome:
        return cls(kind=OutcomeKind.RECEIPT, receipt=dict(receipt))

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "kind": self.kind.value,
            "completedAt": self.completed_at.isoformat(),
        }
        if self.kind is OutcomeKind.RECORDS:
            payload["results"] = self.records
        else:
            payload["receipt"] = self.receipt
        return payload


@dataclass(slots=True)
class Credentials:
    """Bearer credentials attached to every coordinator call."""

    token: Optional[str] = None
    user_id: Optional[str] = None

    @property
    def is_present(self) -> bool:
        return bool(self.token)

    def clear(self) -> None:
        self.token = None
        self.user_id = None

    def authorization_header(self) -> Dict[str, str]:
        if not self.token:
            return {}
        return {"Authorization": f"Bearer {self.token}"}


class AgentStatus(str, Enum):
    """Externally observable agent status."""

    HEALTHY = "healthy"
    DRAINING = "draining"
    STOPPED = "stopped"
    UNAUTHENTICATED = "unauthenticated"


class RuntimePhase(str, Enum):
    """Control loop phase of the runtime."""

    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class BreakerSnapshot:
    """Read-only view of a circuit breaker."""

    name: str
    state: BreakerState
    consecutive_failures: int
    consecutive_successes: int
    last_failure_at: Optional[float]
    total_failures: int
    total_successes: int
    trip_count: int


@dataclass(frozen=True, slots=True)
class ResourceSnapshot:
    rss_bytes: int = 0
    cpu_percent: float = 0.0
    num_threads: int = 0
    uptime_seconds: float = 0.0


@dataclass(frozen=True, slots=True)
class MetricsSnapshot:
    tasks_completed: int
    tasks_failed: int
    tasks_retried: int
    tasks_timed_out: int
    average_latency_seconds: float
    tasks_per_minute: float
    success_rate: float
    last_activity_at: Optional[datetime]

    def to_payload(self) -> Dict[str, Any]:
        return {
            "tasksCompleted": self.tasks_completed,
            "tasksFailed": self.tasks_failed,
            "tasksRetried": self.tasks_retried,
            "tasksTimedOut": self.tasks_timed_out,
            "averageLatencySeconds": round(self.average_latency_seconds, 3),
            "tasksPerMinute": round(self.tasks_per_minute, 3),
            "successRate": round(self.success_rate, 2),
            "lastActivity": self.last_activity_at.isoformat() if self.last_activity_at else None,
        }


@dataclass(slots=True)
class Metrics:
    """Monotonic counters for one agent process."""

    tasks_completed: int = 0
    tasks_failed: int = 0
    tasks_retried: int = 0
    tasks_timed_out: int = 0
    average_latency_seconds: float = 0.0
    latency_samples: int = 0
    started_at: float = field(default_factory=time.monotonic)
    last_activity_at: Optional[datetime] = None

    def record_latency(self, seconds: float) -> None:
        self.latency_samples += 1
        self.average_latency_seconds += (seconds - self.average_latency_seconds) / self.latency_samples

    def touch(self) -> None:
        self.last_activity_at = utc_now()

    def snapshot(self, now: Optional[float] = None) -> MetricsSnapshot:
        elapsed = (now if now is not None else time.monotonic()) - self.started_at
        finished = self.tasks_completed + self.tasks_failed
        return MetricsSnapshot(
            tasks_completed=self.tasks_completed,
            tasks_failed=self.tasks_failed,
            tasks_retried=self.tasks_retried,
            tasks_timed_out=self.tasks_timed_out,
            average_latency_seconds=self.average_latency_seconds,
            tasks_per_minute=(finished / elapsed) * 60 if elapsed > 0 else 0.0,
            success_rate=(self.tasks_completed / finished) * 100 if finished else 0.0,
            last_activity_at=self.last_activity_at,
        )


@dataclass(frozen=True, slots=True)
class AgentHealth:
    """Liveness report produced by the health reporter."""

    agent_id: str
    status: AgentStatus
    phase: RuntimePhase
    last_heartbeat_at: datetime
    active_task_count: int
    queue_size: int
    paused: bool
    resources: ResourceSnapshot

    def to_payload(self) -> Dict[str, Any]:
        return {
            "agentId": self.agent_id,
            "status": self.status.value,
            "phase": self.phase.value,
            "lastHeartbeatAt": self.last_heartbeat_at.isoformat(),
            "activeTaskCount": self.active_task_count,
            "queueSize": self.queue_size,
            "paused": self.paused,
            "resources": {
                "rssBytes": self.resources.rss_bytes,
                "cpuPercent": self.resources.cpu_percent,
                "numThreads": self.resources.num_threads,
                "uptimeSeconds": round(self.resources.uptime_seconds, 1),
            },
        }


class MessageKind(str, Enum):
    """Kinds of messages exchanged over the agent bus."""

    POLL_NOW = "poll_now"
    STATUS_CHANGED = "status_changed"


@dataclass(slots=True)
class AgentMessage:
    """Canonical message exchanged between agent components over the bus."""

    sender_id: str
    recipient_id: Optional[str]
    kind: MessageKind
    payload: Dict[str, Any] = field(default_factory=dict)

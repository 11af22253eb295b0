"""Deterministic failure classification and retry policy for task attempts."""
from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from taskagent.config import RetryConfig
from taskagent.core.errors import (
    AgentFatalError,
    CircuitOpenError,
    ExecutionTimeoutError,
    ShutdownAbortError,
    TaskError,
    UnsupportedTaskError,
)
from taskagent.core.models import Task


class FailureClass(str, Enum):
    """Normalized failure classes used by the retry policy."""

    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    TERMINAL = "terminal"
    UNSUPPORTED = "unsupported"
    SHUTDOWN = "shutdown"
    FATAL = "fatal"


RETRYABLE_CLASSES = frozenset({FailureClass.TIMEOUT, FailureClass.TRANSIENT})

# Shortest wait before re-offering a task rejected by an open circuit.
MIN_CIRCUIT_WAIT_SECONDS = 1.0


@dataclass(slots=True)
class FailureClassification:
    failure_class: FailureClass
    reason_code: str
    message: str

    @property
    def retryable(self) -> bool:
        return self.failure_class in RETRYABLE_CLASSES

    def to_reason(self) -> dict:
        return {
            "failureClass": self.failure_class.value,
            "reasonCode": self.reason_code,
            "message": self.message,
        }


@dataclass(slots=True)
class RetryDecision:
    retry: bool
    delay_seconds: float
    classification: FailureClassification
    counts_attempt: bool = True


def classify_failure(error: BaseException) -> FailureClassification:
    """Map an exception raised by a task attempt onto a failure class."""

    message = str(error) or type(error).__name__
    if isinstance(error, ExecutionTimeoutError):
        return FailureClassification(FailureClass.TIMEOUT, error.reason_code, message)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return FailureClassification(FailureClass.TIMEOUT, "timeout", message)
    if isinstance(error, CircuitOpenError):
        return FailureClassification(FailureClass.TRANSIENT, "circuit_open", message)
    if isinstance(error, UnsupportedTaskError):
        return FailureClassification(FailureClass.UNSUPPORTED, error.reason_code, message)
    if isinstance(error, ShutdownAbortError):
        return FailureClassification(FailureClass.SHUTDOWN, error.reason_code, message)
    if isinstance(error, TaskError):
        failure_class = FailureClass.TRANSIENT if error.retryable else FailureClass.TERMINAL
        return FailureClassification(failure_class, error.reason_code, message)
    if isinstance(error, AgentFatalError):
        return FailureClassification(FailureClass.FATAL, "agent_fatal", message)
    # Unknown errors are assumed to be environmental.
    return FailureClassification(FailureClass.TRANSIENT, "unexpected_error", message)


class RetryPolicy:
    """Bounded retry budget with exponential backoff and seeded jitter.

    ``backoff_delay(n) = min(max_delay, base * 2 ** (n - 1))`` plus a jitter
    drawn uniformly from ``[0, jitter_ratio * delay]``.
    """

    def __init__(
        self,
        *,
        max_retries: int = 3,
        base_delay: float = 30.0,
        max_delay: float = 900.0,
        jitter_ratio: float = 0.1,
        seed: Optional[int] = None,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter_ratio = jitter_ratio
        self._random = random.Random(seed)  # noqa: S311

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay_seconds,
            max_delay=config.max_delay_seconds,
            jitter_ratio=config.jitter_ratio,
            seed=config.seed,
        )

    def should_retry(self, task: Task, error: BaseException) -> bool:
        if isinstance(error, CircuitOpenError):
            return True
        return classify_failure(error).retryable and task.attempts < self.max_retries

    def backoff_delay(self, attempts: int) -> float:
        delay = min(self.max_delay, self.base_delay * (2 ** max(attempts - 1, 0)))
        if self.jitter_ratio > 0 and delay > 0:
            delay += self._random.uniform(0, self.jitter_ratio * delay)
        return delay

    def decide(self, task: Task, error: BaseException) -> RetryDecision:
        """Choose between retrying and failing ``task`` after ``error``.

        A task rejected by an open circuit never ran, so it is offered again
        once the circuit may admit calls and keeps its attempt count.
        """
        classification = classify_failure(error)
        if isinstance(error, CircuitOpenError):
            return RetryDecision(
                retry=True,
                delay_seconds=max(error.retry_in, MIN_CIRCUIT_WAIT_SECONDS),
                classification=classification,
                counts_attempt=False,
            )
        if classification.retryable and task.attempts < self.max_retries:
            return RetryDecision(
                retry=True,
                delay_seconds=self.backoff_delay(task.attempts + 1),
                classification=classification,
            )
        return RetryDecision(retry=False, delay_seconds=0.0, classification=classification)

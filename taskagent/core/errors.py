"""Error taxonomy shared by the dispatcher, runtime and coordinator client."""
from __future__ import annotations

from typing import Optional


class TaskError(Exception):
    """Failure of a single task execution attempt."""

    retryable: bool = False
    reason_code: str = "task_error"

    def __init__(self, message: str, *, reason_code: Optional[str] = None) -> None:
        super().__init__(message)
        if reason_code is not None:
            self.reason_code = reason_code


class TransientTaskError(TaskError):
    """Network failure, remote timeout or remote 5xx while executing a task."""

    retryable = True
    reason_code = "transient"


class ExecutionTimeoutError(TransientTaskError):
    """Handler exceeded the per-task wall-clock budget."""

    reason_code = "execution_timeout"

    def __init__(self, task_id: str, timeout_seconds: float) -> None:
        super().__init__(f"Task {task_id} exceeded {timeout_seconds:.1f}s execution timeout")
        self.task_id = task_id
        self.timeout_seconds = timeout_seconds


class HandlerCrashError(TransientTaskError):
    """Unexpected exception escaped a handler."""

    reason_code = "handler_crash"


class TerminalTaskError(TaskError):
    """Failure that retrying cannot fix."""

    reason_code = "terminal"


class UnsupportedTaskError(TerminalTaskError):
    """No handler registered for a (domain, kind) pair."""

    reason_code = "unsupported_task"

    def __init__(self, domain: str, kind: str) -> None:
        super().__init__(f"No handler registered for domain '{domain}' and kind '{kind}'")
        self.domain = domain
        self.kind = kind


class MalformedParametersError(TerminalTaskError):
    """Task parameters are missing or invalid for the handler."""

    reason_code = "malformed_parameters"


class NotApplicableError(TerminalTaskError):
    """Handler reports the task no longer applies (e.g. already applied)."""

    reason_code = "not_applicable"


class ShutdownAbortError(TerminalTaskError):
    """Task was torn down because the agent shut down."""

    reason_code = "agent_shutdown"


class AgentFatalError(Exception):
    """Agent-level condition that stops polling."""


class AuthenticationError(AgentFatalError):
    """Coordinator rejected the agent credentials."""

    def __init__(self, message: str = "Coordinator rejected credentials", *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ResourceExhaustedError(AgentFatalError):
    """Local resources are exhausted beyond recovery."""


class CoordinatorError(Exception):
    """Coordinator call failed."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CoordinatorUnavailableError(CoordinatorError):
    """Coordinator unreachable, timed out or answered 5xx/429."""


class CoordinatorRequestError(CoordinatorError):
    """Coordinator refused the request for a non-auth client error."""


class CircuitOpenError(Exception):
    """Raised when the breaker rejects a call without attempting it."""

    def __init__(self, name: str, retry_in: float) -> None:
        super().__init__(f"Circuit {name} is open. Retry in {retry_in:.1f}s")
        self.name = name
        self.retry_in = retry_in

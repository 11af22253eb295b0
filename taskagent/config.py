"""Configuration management for the task agent."""
from __future__ import annotations

import os
import socket
from dataclasses import dataclass, field
from typing import Optional

_ENV_PREFIX = "TASKAGENT_"


@dataclass(frozen=True)
class CoordinatorConfig:
    """Coordinator endpoint and credentials."""

    base_url: str = "http://localhost:3000/api"
    token: Optional[str] = None
    user_id: Optional[str] = None
    request_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Thresholds for breakers guarding remote dependencies."""

    failure_threshold: int = 3
    reset_timeout_seconds: float = 30.0
    half_open_success_threshold: int = 2


@dataclass(frozen=True)
class RetryConfig:
    """Retry budget and backoff window for failed tasks."""

    max_retries: int = 3
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 900.0
    jitter_ratio: float = 0.1
    seed: Optional[int] = None


@dataclass(frozen=True)
class RuntimeConfig:
    """Control loop knobs for one agent."""

    poll_interval_seconds: float = 60.0
    max_concurrent_tasks: int = 1
    task_timeout_seconds: float = 300.0
    tick_seconds: float = 0.5


@dataclass(frozen=True)
class HealthConfig:
    """Heartbeat cadence and shutdown grace period."""

    heartbeat_interval_seconds: float = 10.0
    shutdown_grace_seconds: float = 5.0


@dataclass(frozen=True)
class Config:
    """Application configuration loaded from environment variables."""

    agent_id: str = field(default_factory=lambda: f"agent-{socket.gethostname()}")
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)
    breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    health: HealthConfig = field(default_factory=HealthConfig)
    environment: str = "development"

    @classmethod
    def from_env(cls) -> Config:
        """Load configuration from environment variables."""
        seed = os.getenv(f"{_ENV_PREFIX}RETRY_SEED")
        return cls(
            agent_id=os.getenv(f"{_ENV_PREFIX}AGENT_ID") or f"agent-{socket.gethostname()}",
            coordinator=CoordinatorConfig(
                base_url=os.getenv(f"{_ENV_PREFIX}COORDINATOR_URL", "http://localhost:3000/api"),
                token=os.getenv(f"{_ENV_PREFIX}TOKEN") or None,
                user_id=os.getenv(f"{_ENV_PREFIX}USER_ID") or None,
                request_timeout_seconds=_env_float("REQUEST_TIMEOUT_SECONDS", 30.0),
            ),
            breaker=CircuitBreakerConfig(
                failure_threshold=_env_int("BREAKER_FAILURE_THRESHOLD", 3, minimum=1),
                reset_timeout_seconds=_env_float("BREAKER_RESET_TIMEOUT_SECONDS", 30.0),
                half_open_success_threshold=_env_int("BREAKER_HALF_OPEN_SUCCESSES", 2, minimum=1),
            ),
            retry=RetryConfig(
                max_retries=_env_int("MAX_RETRIES", 3),
                base_delay_seconds=_env_float("RETRY_BASE_SECONDS", 30.0),
                max_delay_seconds=_env_float("RETRY_MAX_SECONDS", 900.0),
                jitter_ratio=_env_float("RETRY_JITTER_RATIO", 0.1),
                seed=int(seed) if seed else None,
            ),
            runtime=RuntimeConfig(
                poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 60.0),
                max_concurrent_tasks=_env_int("MAX_CONCURRENT_TASKS", 1, minimum=1),
                task_timeout_seconds=_env_float("TASK_TIMEOUT_SECONDS", 300.0),
            ),
            health=HealthConfig(
                heartbeat_interval_seconds=_env_float("HEARTBEAT_INTERVAL_SECONDS", 10.0),
                shutdown_grace_seconds=_env_float("SHUTDOWN_GRACE_SECONDS", 5.0),
            ),
            environment=os.getenv("ENVIRONMENT", "development"),
        )


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ValueError(f"{_ENV_PREFIX}{name} must be >= {minimum}, got {value}")
    return value


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{_ENV_PREFIX}{name}")
    if raw is None or raw == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{_ENV_PREFIX}{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ValueError(f"{_ENV_PREFIX}{name} must be >= 0, got {value}")
    return value


# Global config instance
config = Config.from_env()

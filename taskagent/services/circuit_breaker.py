"""Circuit breakers guarding calls to unreliable remote dependencies.

The breaker is a three-state machine:

- CLOSED: every call is attempted; consecutive failures are counted.
- OPEN: calls are rejected with ``CircuitOpenError`` until ``reset_timeout``
  has elapsed since the last failure.
- HALF_OPEN: one trial call at a time; a failure reopens, enough consecutive
  successes close.

Only calls admitted in the current state move the machine: a call admitted
while CLOSED that finishes after the circuit opened is counted in the totals
and otherwise ignored. Errors listed in ``excluded`` prove the dependency
answered and are recorded as successes.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

from taskagent.config import CircuitBreakerConfig
from taskagent.core.errors import CircuitOpenError
from taskagent.core.models import BreakerSnapshot, BreakerState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitBreaker:
    """Serialized breaker state shared by every caller of one dependency."""

    def __init__(
        self,
        name: str,
        *,
        failure_threshold: int = 3,
        reset_timeout: float = 30.0,
        half_open_success_threshold: int = 2,
        excluded: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if failure_threshold < 1 or half_open_success_threshold < 1:
            raise ValueError("Breaker thresholds must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_success_threshold = half_open_success_threshold
        self.excluded = excluded
        self._clock = clock
        self._lock = asyncio.Lock()
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False
        self._total_failures = 0
        self._total_successes = 0
        self._trip_count = 0

    @classmethod
    def from_config(
        cls,
        name: str,
        config: CircuitBreakerConfig,
        *,
        excluded: Tuple[Type[BaseException], ...] = (),
        clock: Callable[[], float] = time.monotonic,
    ) -> CircuitBreaker:
        return cls(
            name,
            failure_threshold=config.failure_threshold,
            reset_timeout=config.reset_timeout_seconds,
            half_open_success_threshold=config.half_open_success_threshold,
            excluded=excluded,
            clock=clock,
        )

    @property
    def state(self) -> BreakerState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def consecutive_successes(self) -> int:
        return self._consecutive_successes

    @property
    def last_failure_at(self) -> Optional[float]:
        return self._last_failure_at

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` under breaker protection.

        Raises ``CircuitOpenError`` without calling ``operation`` when the
        circuit rejects; otherwise re-raises whatever ``operation`` raised.
        """
        async with self._lock:
            trial = self._admit()

        try:
            result = await operation()
        except self.excluded:
            async with self._lock:
                self._record_success(trial)
            raise
        except Exception:
            async with self._lock:
                self._record_failure(trial)
            raise
        except BaseException:
            # Cancellation is neither a success nor a failure of the dependency.
            if trial:
                async with self._lock:
                    self._trial_in_flight = False
            raise

        async with self._lock:
            self._record_success(trial)
        return result

    async def reset(self) -> None:
        """Force the breaker back to CLOSED with counters zeroed."""
        async with self._lock:
            logger.info("Circuit %s reset manually", self.name)
            self._close()

    def snapshot(self) -> BreakerSnapshot:
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            consecutive_failures=self._consecutive_failures,
            consecutive_successes=self._consecutive_successes,
            last_failure_at=self._last_failure_at,
            total_failures=self._total_failures,
            total_successes=self._total_successes,
            trip_count=self._trip_count,
        )

    def _admit(self) -> bool:
        """Decide whether a call may proceed; returns True for a trial call."""
        if self._state is BreakerState.CLOSED:
            return False

        if self._state is BreakerState.OPEN:
            elapsed = self._clock() - (self._last_failure_at or 0.0)
            if elapsed <= self.reset_timeout:
                raise CircuitOpenError(self.name, self.reset_timeout - elapsed)
            logger.info("Circuit %s half-open after %.1fs", self.name, elapsed)
            self._state = BreakerState.HALF_OPEN
            self._consecutive_successes = 0

        if self._trial_in_flight:
            raise CircuitOpenError(self.name, 0.0)
        self._trial_in_flight = True
        return True

    def _record_failure(self, trial: bool) -> None:
        self._total_failures += 1
        if not trial and self._state is not BreakerState.CLOSED:
            logger.debug("Circuit %s ignoring failure of a call admitted before it opened", self.name)
            return
        self._consecutive_failures += 1
        self._consecutive_successes = 0
        self._last_failure_at = self._clock()
        if trial:
            self._trial_in_flight = False
            self._open()
            return
        if self._consecutive_failures >= self.failure_threshold:
            self._open()

    def _record_success(self, trial: bool) -> None:
        self._total_successes += 1
        if not trial:
            if self._state is BreakerState.CLOSED:
                self._consecutive_failures = 0
            return
        self._trial_in_flight = False
        if self._state is not BreakerState.HALF_OPEN:
            return
        self._consecutive_successes += 1
        if self._consecutive_successes >= self.half_open_success_threshold:
            logger.info(
                "Circuit %s closing after %d consecutive successes",
                self.name,
                self._consecutive_successes,
            )
            self._close()

    def _open(self) -> None:
        if self._state is not BreakerState.OPEN:
            self._trip_count += 1
        logger.warning(
            "Circuit %s open after %d consecutive failures",
            self.name,
            self._consecutive_failures,
        )
        self._state = BreakerState.OPEN

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._consecutive_failures = 0
        self._consecutive_successes = 0
        self._last_failure_at = None
        self._trial_in_flight = False


class BreakerRegistry:
    """Registry maintaining one breaker per remote dependency."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    def register(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        *,
        excluded: Tuple[Type[BaseException], ...] = (),
    ) -> CircuitBreaker:
        breaker = CircuitBreaker.from_config(name, config or self._config, excluded=excluded, clock=self._clock)
        self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker:
        if name not in self._breakers:
            raise KeyError(f"No circuit breaker registered for dependency: {name}")
        return self._breakers[name]

    def get_or_create(
        self,
        name: str,
        *,
        excluded: Tuple[Type[BaseException], ...] = (),
    ) -> CircuitBreaker:
        if name in self._breakers:
            return self._breakers[name]
        return self.register(name, excluded=excluded)

    def snapshot(self) -> Dict[str, BreakerSnapshot]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    async def reset(self, name: str) -> BreakerSnapshot:
        breaker = self.get(name)
        await breaker.reset()
        return breaker.snapshot()

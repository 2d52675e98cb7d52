"""
Circuit Breaker Module
Per-operation failure-state tracking for ledger API calls.

States:
- Closed(consecutive_failures): calls go through
- Open(opened_at): calls fail fast with CircuitOpenError
- HalfOpen(trial_successes): a bounded number of trial calls test recovery
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, TypeVar, Union

from constants import (
    CB_FAILURE_THRESHOLD,
    CB_HALF_OPEN_MAX_CALLS,
    CB_SUCCESS_THRESHOLD,
    CB_TIMEOUT_DURATION,
)
from exceptions import CircuitOpenError
from metrics_sink import CIRCUIT_REJECTED, CIRCUIT_TRANSITION, MetricsSink, NullMetricsSink
from retry_policy import is_retryable

logger = logging.getLogger("CorridorScope.breaker")

T = TypeVar("T")


@dataclass(frozen=True)
class Closed:
    consecutive_failures: int = 0
    name: str = "closed"


@dataclass(frozen=True)
class Open:
    opened_at: float
    name: str = "open"


@dataclass(frozen=True)
class HalfOpen:
    trial_successes: int = 0
    name: str = "half_open"


CircuitState = Union[Closed, Open, HalfOpen]


class CircuitBreaker:
    """
    Circuit breaker for one logical operation.

    Only failures the retry policy classifies as retryable count toward the
    threshold; permanent errors pass through without touching the state.
    """

    def __init__(
        self,
        operation: str,
        failure_threshold: int = CB_FAILURE_THRESHOLD,
        timeout_duration: float = CB_TIMEOUT_DURATION,
        success_threshold: int = CB_SUCCESS_THRESHOLD,
        half_open_max_calls: int = CB_HALF_OPEN_MAX_CALLS,
        is_failure: Callable[[BaseException], bool] = is_retryable,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsSink] = None
    ):
        self.operation = operation
        self.failure_threshold = failure_threshold
        self.timeout_duration = timeout_duration
        self.success_threshold = success_threshold
        self.half_open_max_calls = half_open_max_calls
        self._is_failure = is_failure
        self._clock = clock
        self.metrics = metrics or NullMetricsSink()

        self._state: CircuitState = Closed()
        self._half_open_in_flight = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_open(self) -> bool:
        return isinstance(self._state, Open)

    def _transition(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        if old_state.name == new_state.name:
            return
        if isinstance(new_state, Open):
            logger.warning(f"Circuit breaker [{self.operation}]: {old_state.name} -> open")
        else:
            logger.info(f"Circuit breaker [{self.operation}]: {old_state.name} -> {new_state.name}")
        self.metrics.increment(
            CIRCUIT_TRANSITION,
            tags={"operation": self.operation, "from": old_state.name, "to": new_state.name}
        )

    def _time_until_recovery(self) -> float:
        if not isinstance(self._state, Open):
            return 0.0
        elapsed = self._clock() - self._state.opened_at
        return max(0.0, self.timeout_duration - elapsed)

    async def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when it is a half-open trial."""
        async with self._lock:
            if isinstance(self._state, Open):
                if self._time_until_recovery() > 0:
                    self.metrics.increment(CIRCUIT_REJECTED, tags={"operation": self.operation})
                    raise CircuitOpenError(self.operation, self._time_until_recovery())
                self._transition(HalfOpen(0))
                self._half_open_in_flight = 0

            if isinstance(self._state, HalfOpen):
                if self._half_open_in_flight >= self.half_open_max_calls:
                    self.metrics.increment(CIRCUIT_REJECTED, tags={"operation": self.operation})
                    raise CircuitOpenError(self.operation, 0.0)
                self._half_open_in_flight += 1
                return True

            return False

    async def _on_success(self, trial: bool) -> None:
        async with self._lock:
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            state = self._state
            if isinstance(state, HalfOpen):
                successes = state.trial_successes + 1
                if successes >= self.success_threshold:
                    self._transition(Closed(0))
                else:
                    self._transition(HalfOpen(successes))
            elif isinstance(state, Closed) and state.consecutive_failures:
                self._transition(Closed(0))

    async def _on_failure(self, trial: bool) -> None:
        async with self._lock:
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            state = self._state
            if isinstance(state, HalfOpen):
                logger.warning(f"Circuit breaker [{self.operation}]: trial call failed. Re-opening circuit.")
                self._transition(Open(self._clock()))
            elif isinstance(state, Closed):
                failures = state.consecutive_failures + 1
                if failures >= self.failure_threshold:
                    logger.warning(
                        f"Circuit breaker [{self.operation}]: failure threshold "
                        f"({self.failure_threshold}) reached. Opening circuit."
                    )
                    self._transition(Open(self._clock()))
                else:
                    self._transition(Closed(failures))

    async def _release_trial(self, trial: bool) -> None:
        if not trial:
            return
        async with self._lock:
            self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute func with circuit breaker protection"""
        trial = await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            await asyncio.shield(self._release_trial(trial))
            raise
        except Exception as e:
            if self._is_failure(e):
                await self._on_failure(trial)
            else:
                await self._release_trial(trial)
            raise
        await self._on_success(trial)
        return result

    def reset(self) -> None:
        self._transition(Closed(0))
        self._half_open_in_flight = 0

    def to_dict(self) -> Dict:
        state = self._state
        details: Dict = {"operation": self.operation, "state": state.name}
        if isinstance(state, Closed):
            details["consecutive_failures"] = state.consecutive_failures
        elif isinstance(state, Open):
            details["retry_in_seconds"] = round(self._time_until_recovery(), 3)
        else:
            details["trial_successes"] = state.trial_successes
        return details


class CircuitBreakerRegistry:
    """One breaker per logical operation name, created on first use"""

    def __init__(
        self,
        failure_threshold: int = CB_FAILURE_THRESHOLD,
        timeout_duration: float = CB_TIMEOUT_DURATION,
        success_threshold: int = CB_SUCCESS_THRESHOLD,
        half_open_max_calls: int = CB_HALF_OPEN_MAX_CALLS,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[MetricsSink] = None
    ):
        self._settings = {
            "failure_threshold": failure_threshold,
            "timeout_duration": timeout_duration,
            "success_threshold": success_threshold,
            "half_open_max_calls": half_open_max_calls,
        }
        self._clock = clock
        self.metrics = metrics or NullMetricsSink()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, operation: str) -> CircuitBreaker:
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(
                operation,
                clock=self._clock,
                metrics=self.metrics,
                **self._settings
            )
            self._breakers[operation] = breaker
        return breaker

    def items(self):
        return self._breakers.items()

    def __len__(self) -> int:
        return len(self._breakers)

    def snapshot(self) -> Dict[str, Dict]:
        return {name: breaker.to_dict() for name, breaker in sorted(self._breakers.items())}

"""
Retry Policy Module
Error classification and backoff/retry decisions for ledger API calls.
"""

import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

import aiohttp

from cancellation import CancellationToken, sleep_with_token
from constants import (
    BACKOFF_EXPONENTIAL_BASE,
    DEFAULT_BASE_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_BACKOFF,
)
from exceptions import (
    APIConnectionError,
    APIRateLimitError,
    APIResponseError,
    APITimeoutError,
    CircuitOpenError,
    OperationCancelledError,
    ParseError,
    RetriesExhaustedError,
)
from metrics_sink import FETCH_RETRY, MetricsSink, NullMetricsSink
from utils import calculate_backoff_delay

logger = logging.getLogger("CorridorScope.retry")

T = TypeVar("T")


class ErrorClass(Enum):
    RETRYABLE = "retryable"
    PERMANENT = "permanent"


def classify(error: BaseException) -> ErrorClass:
    """
    Network errors, timeouts, 429 and 5xx are retryable. Parse errors, other
    4xx, open circuits and cancellations are permanent.
    """
    if isinstance(error, (CircuitOpenError, OperationCancelledError, ParseError)):
        return ErrorClass.PERMANENT
    if isinstance(error, (APIConnectionError, APITimeoutError, APIRateLimitError)):
        return ErrorClass.RETRYABLE
    if isinstance(error, APIResponseError):
        status = error.status_code or 0
        if status == 429 or status >= 500:
            return ErrorClass.RETRYABLE
        return ErrorClass.PERMANENT
    if isinstance(error, (asyncio.TimeoutError, TimeoutError, aiohttp.ClientError)):
        return ErrorClass.RETRYABLE
    return ErrorClass.PERMANENT


def is_retryable(error: BaseException) -> bool:
    return classify(error) is ErrorClass.RETRYABLE


class RetryPolicy:
    """
    Exponential backoff with jitter, capped at max_attempts total attempts.

    A retry-after hint on the error (429) replaces the computed backoff.
    Exceeding max_attempts raises RetriesExhaustedError wrapping the last error.
    """

    def __init__(
        self,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        base_backoff: float = DEFAULT_BASE_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        jitter: bool = True,
        metrics: Optional[MetricsSink] = None
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        self.max_attempts = max_attempts
        self.base_backoff = base_backoff
        self.max_backoff = max_backoff
        self.jitter = jitter
        self.metrics = metrics or NullMetricsSink()

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before the retry that follows attempt (0-indexed)"""
        if isinstance(error, APIRateLimitError) and error.retry_after_seconds is not None:
            return max(0.0, error.retry_after_seconds)
        return calculate_backoff_delay(
            attempt,
            self.base_backoff,
            self.max_backoff,
            exponential_base=BACKOFF_EXPONENTIAL_BASE,
            jitter=self.jitter
        )

    async def execute(
        self,
        func: Callable[[], Awaitable[T]],
        operation: str = "call",
        cancel_token: Optional[CancellationToken] = None,
        on_retry: Optional[Callable[[BaseException, int], None]] = None
    ) -> T:
        """
        Run func until it succeeds, fails permanently, or attempts run out.

        Args:
            func: Zero-argument coroutine factory, called once per attempt
            operation: Name used in logs and metrics
            cancel_token: Aborts the backoff sleep
            on_retry: Optional callback (error, attempt_number) before each retry
        """
        last_error: Optional[BaseException] = None

        for attempt in range(self.max_attempts):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()
            try:
                return await func()
            except Exception as e:
                if classify(e) is ErrorClass.PERMANENT:
                    raise
                last_error = e

                if attempt >= self.max_attempts - 1:
                    break

                delay = self.compute_delay(attempt, e)
                logger.warning(
                    f"Attempt {attempt + 1}/{self.max_attempts} failed for {operation}: {e}. "
                    f"Retrying in {delay:.2f}s"
                )
                self.metrics.increment(FETCH_RETRY, tags={"operation": operation})
                if on_retry:
                    on_retry(e, attempt + 1)
                await sleep_with_token(delay, cancel_token)

        logger.error(f"All {self.max_attempts} attempts failed for {operation}: {last_error}")
        raise RetriesExhaustedError(
            f"Retries exhausted for {operation} after {self.max_attempts} attempts",
            last_error=last_error,
            attempts=self.max_attempts
        ) from last_error

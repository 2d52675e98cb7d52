"""
Cancellation Module
Caller-supplied deadline / cancellation token checked at every suspension point
(rate-limit wait, network I/O, retry backoff).
"""

import asyncio
import time
from typing import Awaitable, Callable, Optional, TypeVar

from exceptions import OperationCancelledError

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation with an optional deadline.

    Usage:
        token = CancellationToken.with_timeout(10.0)
        await token.sleep(1.5)            # raises OperationCancelledError if cancelled
        data = await token.run(fetch())   # aborts the awaitable on cancel/deadline
    """

    def __init__(
        self,
        deadline: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._deadline = deadline
        self._clock = clock
        self._event = asyncio.Event()
        self._reason: Optional[str] = None

    @classmethod
    def with_timeout(cls, seconds: float, clock: Callable[[], float] = time.monotonic) -> "CancellationToken":
        return cls(deadline=clock() + seconds, clock=clock)

    @property
    def deadline(self) -> Optional[float]:
        return self._deadline

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        if self._event.is_set():
            return True
        if self._deadline is not None and self._clock() >= self._deadline:
            self._reason = "deadline exceeded"
            self._event.set()
            return True
        return False

    def remaining(self) -> Optional[float]:
        """Seconds until the deadline, None without one"""
        if self._deadline is None:
            return None
        return max(0.0, self._deadline - self._clock())

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelledError(f"Operation aborted: {self._reason}")

    async def sleep(self, delay: float) -> None:
        """Sleep for delay seconds unless cancelled or the deadline comes first"""
        self.raise_if_cancelled()
        remaining = self.remaining()
        if remaining is not None and remaining < delay:
            await self._wait_event(remaining)
            self._reason = self._reason or "deadline exceeded"
            self._event.set()
            self.raise_if_cancelled()
        if await self._wait_event(delay):
            self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await awaitable, cancelling it if the token fires first"""
        if self.is_cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter},
                timeout=self.remaining(),
                return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        if not self._event.is_set():
            self._reason = "deadline exceeded"
            self._event.set()
        self.raise_if_cancelled()
        raise OperationCancelledError("Operation aborted")

    async def _wait_event(self, timeout: float) -> bool:
        """True if the token fired within timeout"""
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False


async def sleep_with_token(delay: float, token: Optional[CancellationToken] = None) -> None:
    """asyncio.sleep that honours an optional cancellation token"""
    if delay <= 0:
        if token is not None:
            token.raise_if_cancelled()
        return
    if token is None:
        await asyncio.sleep(delay)
    else:
        await token.sleep(delay)


async def run_with_token(awaitable: Awaitable[T], token: Optional[CancellationToken] = None) -> T:
    """Await awaitable under an optional cancellation token"""
    if token is None:
        return await awaitable
    return await token.run(awaitable)

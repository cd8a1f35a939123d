import asyncio
import time

from .errors import ControlUnreachable
from .logger import get_logger

logger = get_logger("polling")


class Clock:
    """Monotonic time source and sleep, swapped for a virtual clock in tests"""

    def now(self):
        return time.monotonic()

    async def sleep(self, seconds):
        await asyncio.sleep(seconds)


class CancelToken:
    """Abort signal shared by every poller of a run"""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason = None

    def cancel(self, reason="cancelled"):
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set()

    async def wait(self):
        await self._event.wait()


async def pause(clock, seconds, cancel=None):
    """Sleep on ``clock`` unless ``cancel`` fires first"""
    if cancel is None:
        await clock.sleep(seconds)
        return
    sleeper = asyncio.ensure_future(clock.sleep(seconds))
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        await asyncio.wait({sleeper, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        # Never leave the losing task behind
        for task in (sleeper, waiter):
            if not task.done():
                task.cancel()
        await asyncio.gather(sleeper, waiter, return_exceptions=True)


class Poller:
    """Fixed-interval polling bounded by a deadline, an attempt budget, or both.

    Iterate with ``async for attempt in poller``; the loop ends when the budget
    is spent or the cancel token fires. ``expired`` and ``cancelled`` tell the
    caller why it ended.
    """

    def __init__(self, interval_s, timeout_s=None, max_attempts=None, cancel=None, clock=None):
        if interval_s < 0:
            raise ValueError("interval_s must be >= 0")
        if timeout_s is None and max_attempts is None:
            raise ValueError("a poller needs a timeout or an attempt budget")
        self.interval_s = interval_s
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.cancel = cancel
        self.clock = clock or Clock()
        self.attempts = 0
        self.expired = False
        self.deadline = None

    @property
    def cancelled(self):
        return self.cancel is not None and self.cancel.cancelled

    def _remaining(self):
        if self.deadline is None:
            return None
        return self.deadline - self.clock.now()

    def _exhausted(self):
        if self.max_attempts is not None and self.attempts >= self.max_attempts:
            return True
        remaining = self._remaining()
        return remaining is not None and remaining <= 0

    def _stop(self, expired=False):
        self.expired = expired
        raise StopAsyncIteration

    def __aiter__(self):
        if self.timeout_s is not None:
            self.deadline = self.clock.now() + self.timeout_s
        self.attempts = 0
        self.expired = False
        return self

    async def __anext__(self):
        if self.cancelled:
            self._stop()
        if self.attempts:
            if self._exhausted():
                self._stop(expired=True)
            remaining = self._remaining()
            delay = self.interval_s if remaining is None else min(self.interval_s, remaining)
            await pause(self.clock, delay, self.cancel)
            if self.cancelled:
                self._stop()
            remaining = self._remaining()
            if remaining is not None and remaining < 0:
                self._stop(expired=True)
        self.attempts += 1
        return self.attempts


async def retry_with_backoff(operation, max_attempts=3, base_delay_s=1.0, max_delay_s=30.0,
                             retry_on=(ControlUnreachable,), clock=None, cancel=None, label="operation"):
    """Run ``operation()`` until it succeeds or ``max_attempts`` is spent.

    Only exceptions in ``retry_on`` are retried; the last one is re-raised,
    also when ``cancel`` fires during a backoff. Returns ``(result, attempts)``.
    """
    clock = clock or Clock()
    max_attempts = max(1, max_attempts)

    for attempt in range(1, max_attempts + 1):
        try:
            return await operation(), attempt
        except retry_on as e:
            if attempt >= max_attempts:
                logger.error(f"{label} failed after {attempt} attempts: {e}")
                raise
            backoff_time = min((2 ** (attempt - 1)) * base_delay_s, max_delay_s)
            logger.warning(f"{label} attempt {attempt} failed: {e}; retrying in {backoff_time}s")
            await pause(clock, backoff_time, cancel)
            if cancel is not None and cancel.cancelled:
                logger.warning(f"{label} abandoned after {attempt} attempts: {cancel.reason}")
                raise

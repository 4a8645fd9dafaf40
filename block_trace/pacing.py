"""
Batch Pacing - Rate-limiting policies applied between batch chunks.

The orchestrator calls pause() once between consecutive chunks, never
after the last one. Policies are swappable:

- FixedDelayPacer: sleep a fixed interval (default, 1s)
- TokenBucketPacer: allow bursts up to `capacity`, refill at `rate` per second
- NoDelayPacer: never waits
"""

import asyncio
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional


Sleeper = Callable[[float], Awaitable[None]]


class BatchPacer(ABC):
    """Policy deciding how long to wait between chunks."""

    @abstractmethod
    async def pause(self) -> None:
        pass


class NoDelayPacer(BatchPacer):

    async def pause(self) -> None:
        return None


class FixedDelayPacer(BatchPacer):
    """Sleep a fixed number of seconds between chunks."""

    def __init__(self, delay_seconds: float = 1.0, sleep: Optional[Sleeper] = None) -> None:
        if delay_seconds < 0:
            raise ValueError("delay_seconds cannot be negative")
        self.delay_seconds = delay_seconds
        self._sleep = sleep or asyncio.sleep
        self.pauses = 0

    async def pause(self) -> None:
        self.pauses += 1
        if self.delay_seconds > 0:
            await self._sleep(self.delay_seconds)


class TokenBucketPacer(BatchPacer):
    """
    Token bucket: each pause consumes one token.

    Tokens refill continuously at `rate` per second up to `capacity`.
    When the bucket is empty, pause() sleeps until one token is available.
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        sleep: Optional[Sleeper] = None,
        monotonic: Optional[Callable[[], float]] = None,
    ) -> None:
        if rate <= 0:
            raise ValueError("rate must be positive")
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.rate = rate
        self.capacity = capacity
        self._sleep = sleep or asyncio.sleep
        self._monotonic = monotonic or time.monotonic
        self._tokens = float(capacity)
        self._last_refill = self._monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = self._monotonic()
        elapsed = now - self._last_refill
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._last_refill = now

    @property
    def available_tokens(self) -> float:
        self._refill()
        return self._tokens

    async def pause(self) -> None:
        async with self._lock:
            self._refill()
            if self._tokens < 1:
                wait = (1 - self._tokens) / self.rate
                await self._sleep(wait)
                self._refill()
                # Sleep may return early under a fake timer
                self._tokens = max(self._tokens, 1.0)
            self._tokens -= 1

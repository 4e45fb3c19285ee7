"""Input-token budget for the chat completion API."""

import asyncio
import time
from typing import Awaitable, Callable, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)

REMAINING_HEADER = "anthropic-ratelimit-input-tokens-remaining"


class TokenBucket:
    """Token bucket refilled continuously at ``tokens_per_minute``.

    Callers ``acquire`` an estimate before each request. Response headers, when
    present, overwrite the local estimate with the server's count.
    """

    def __init__(self, tokens_per_minute: int,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if tokens_per_minute <= 0:
            raise ValueError("tokens_per_minute must be positive")
        self.capacity = float(tokens_per_minute)
        self.rate = self.capacity / 60.0
        self.tokens = self.capacity
        self._clock = clock
        self._sleep = sleep
        self._updated = clock()
        self._lock = asyncio.Lock()

    def _refill(self):
        now = self._clock()
        self.tokens = min(self.capacity, self.tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self, tokens: int) -> float:
        """Wait until ``tokens`` are available and spend them. Returns seconds waited."""
        needed = min(float(tokens), self.capacity)
        waited = 0.0
        async with self._lock:
            self._refill()
            while self.tokens < needed:
                delay = (needed - self.tokens) / self.rate
                logger.info("Waiting for token quota", needed=needed, available=round(self.tokens), delay=round(delay, 2))
                await self._sleep(delay)
                waited += delay
                self._refill()
            self.tokens -= needed
        return waited

    def observe_headers(self, headers: Optional[Mapping[str, str]]):
        if not headers:
            return
        remaining = headers.get(REMAINING_HEADER)
        if remaining is None:
            return
        try:
            value = float(remaining)
        except ValueError:
            return
        self._refill()
        self.tokens = max(0.0, min(self.capacity, value))

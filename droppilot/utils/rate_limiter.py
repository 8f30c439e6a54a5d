"""Rate limiting for remote API requests."""

from __future__ import annotations

import asyncio


class RateLimiter:
    """
    Async context manager allowing at most `capacity` operations per `window` seconds.

    Concurrent operations count against the capacity as well.

    Usage:
        limiter = RateLimiter(capacity=5, window=1)
        async with limiter:
            await do_request()
    """

    def __init__(self, *, capacity: int, window: float):
        self.total: int = 0
        self.concurrent: int = 0
        self.window: float = window
        self.capacity: int = capacity
        self._reset_task: asyncio.Task[None] | None = None
        self._cond: asyncio.Condition = asyncio.Condition()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.concurrent}/{self.total}/{self.capacity})"

    def __del__(self) -> None:
        if self._reset_task is not None:
            self._reset_task.cancel()

    def _can_proceed(self) -> bool:
        return max(self.total, self.concurrent) < self.capacity

    async def __aenter__(self) -> RateLimiter:
        async with self._cond:
            await self._cond.wait_for(self._can_proceed)
            self.total += 1
            self.concurrent += 1
            if self._reset_task is None:
                self._reset_task = asyncio.create_task(self._window_reset())
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        async with self._cond:
            self.concurrent -= 1
            self._cond.notify(self.capacity - self.concurrent)

    async def _window_reset(self) -> None:
        await asyncio.sleep(self.window)
        async with self._cond:
            self._reset_task = None
            self.total = 0
            if self.concurrent < self.capacity:
                self._cond.notify(self.capacity - self.concurrent)

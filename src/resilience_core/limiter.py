"""FIFO concurrency gate for async thunks."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass
from typing import Any, TypeVar

T = TypeVar("T")


@dataclass(slots=True)
class LimiterConfig:
    """Limiter configuration values.

    Attributes:
        concurrency: Maximum number of tasks running at once. Values below 1
            are clamped to 1.
    """

    concurrency: int = 2

    def __post_init__(self) -> None:
        self.concurrency = max(1, int(self.concurrency))


class Limiter:
    """Bound the number of concurrently running async tasks.

    Tasks start in submission order. When a task settles, its slot is handed
    straight to the oldest waiter, so ``active_count`` never exceeds
    ``concurrency`` and a later submission can never overtake a queued one.
    """

    def __init__(self, config: LimiterConfig | None = None) -> None:
        self.config = LimiterConfig() if config is None else config
        self._active = 0
        self._waiters: deque[asyncio.Future[None]] = deque()

    @property
    def concurrency(self) -> int:
        return self.config.concurrency

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def pending_count(self) -> int:
        return sum(1 for waiter in self._waiters if not waiter.done())

    async def __call__(self, task_fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``task_fn`` once a slot is free and return its result."""
        await self._acquire()
        try:
            return await task_fn()
        finally:
            self._release()

    async def _acquire(self) -> None:
        if self._active < self.config.concurrency and not self._waiters:
            self._active += 1
            return

        waiter = asyncio.get_running_loop().create_future()
        self._waiters.append(waiter)
        try:
            await waiter
        except asyncio.CancelledError:
            if waiter.done() and not waiter.cancelled():
                # The slot was already handed over; pass it on.
                self._release()
            else:
                with suppress(ValueError):
                    self._waiters.remove(waiter)
            raise

    def _release(self) -> None:
        while self._waiters:
            waiter = self._waiters.popleft()
            if not waiter.done():
                waiter.set_result(None)
                return
        self._active -= 1


def create_limiter(concurrency: int) -> Limiter:
    """Return a limiter that runs at most ``concurrency`` tasks at once."""
    return Limiter(LimiterConfig(concurrency=concurrency))


async def gather_limited(
    task_fns: Iterable[Callable[[], Awaitable[Any]]],
    *,
    concurrency: int | None = None,
    limiter: Limiter | None = None,
    return_exceptions: bool = False,
) -> list[Any]:
    """Run a batch of thunks through one limiter.

    Results are returned in submission order. With ``return_exceptions`` a
    failing thunk contributes its exception instead of aborting the batch.

    Args:
        task_fns: Zero-argument async callables to run.
        concurrency: Limit for a fresh limiter when ``limiter`` is not given.
        limiter: Existing limiter to share with other callers.
        return_exceptions: Collect exceptions as results instead of raising.
    """
    if limiter is None:
        limiter = Limiter(
            LimiterConfig() if concurrency is None else LimiterConfig(concurrency)
        )
    return await asyncio.gather(
        *(limiter(task_fn) for task_fn in task_fns),
        return_exceptions=return_exceptions,
    )

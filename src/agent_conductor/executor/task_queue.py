"""Semaphore-bounded queue of step coroutines."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

T = TypeVar("T")


class BoundedTaskQueue:
    """Runs submitted coroutines with at most ``max_concurrency`` in flight.

    Waiting submissions are admitted in FIFO order; a submitted coroutine
    factory is only called once a slot is held.
    """

    def __init__(self, max_concurrency: int) -> None:
        if max_concurrency <= 0:
            raise ValueError("max_concurrency must be a positive integer")
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: set[asyncio.Task] = set()
        self.running = 0
        self.pending = 0
        self.peak_running = 0

    def submit(
        self,
        factory: Callable[[], Awaitable[T]],
        *,
        name: str | None = None,
    ) -> asyncio.Task[T]:
        task = asyncio.create_task(self._run(factory), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _run(
        self,
        factory: Callable[[], Awaitable[T]],
    ) -> T:
        self.pending += 1
        admitted = False
        try:
            async with self._semaphore:
                self.pending -= 1
                admitted = True
                self.running += 1
                self.peak_running = max(self.peak_running, self.running)
                try:
                    return await factory()
                finally:
                    self.running -= 1
        finally:
            if not admitted:
                self.pending -= 1

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def cancel_all(self) -> None:
        """Cancel every queued or running task and wait until they finish."""

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

"""Single-flight coalescing of concurrent operations by key."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Hashable
from functools import partial
from typing import Generic, TypeVar

T = TypeVar("T")


def _retrieve_exception(task: asyncio.Task[object]) -> None:
    # Joined callers may all have gone away; mark the exception as seen.
    if not task.cancelled():
        task.exception()


class SingleFlight(Generic[T]):
    """At most one in-progress operation per key; concurrent callers share it.

    The operation runs in its own task, so a caller that stops awaiting does
    not cancel it for the others. The registry entry is removed by the task
    itself on every exit path, before any joined caller resumes.
    """

    def __init__(self) -> None:
        self._in_flight: dict[Hashable, asyncio.Task[T]] = {}

    def __contains__(self, key: Hashable) -> bool:
        return key in self._in_flight

    def __len__(self) -> int:
        return len(self._in_flight)

    def running(self, key: Hashable) -> asyncio.Task[T] | None:
        return self._in_flight.get(key)

    async def do(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn`` for ``key`` or join the run already in progress."""
        return await asyncio.shield(self.start(key, fn))

    def start(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> asyncio.Task[T]:
        """Return the in-flight task for ``key``, starting one if needed."""
        # Lookup and registration happen without an await in between, so two
        # callers in the same tick cannot both start a task.
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._run(key, fn))
            task.add_done_callback(_retrieve_exception)
            task.add_done_callback(partial(self._discard, key))
            self._in_flight[key] = task
        return task

    def forget(self, key: Hashable) -> None:
        """Detach the in-flight operation for ``key``; it still completes."""
        self._in_flight.pop(key, None)

    def forget_all(self) -> None:
        self._in_flight.clear()

    async def _run(self, key: Hashable, fn: Callable[[], Awaitable[T]]) -> T:
        try:
            return await fn()
        finally:
            self._discard(key, asyncio.current_task())

    def _discard(self, key: Hashable, task: asyncio.Task[T] | None) -> None:
        # A task cancelled before its first step never reaches _run's finally
        if task is not None and self._in_flight.get(key) is task:
            del self._in_flight[key]


__all__ = ["SingleFlight"]

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

T = TypeVar("T")


def _consume_result(task: "asyncio.Task[Any]") -> None:
    # Every waiter may have been cancelled; retrieve the exception so asyncio does not warn.
    if not task.cancelled():
        task.exception()


class RequestDeduplicator:
    """Collapse concurrent identical requests into one outbound call."""

    def __init__(self) -> None:
        self._in_flight: dict[str, asyncio.Task[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._in_flight

    async def dedupe(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """Await the shared call for *key*, starting it if none is running.

        All callers that arrive while the call is pending receive the same
        result or the same exception. Cancelling one waiter does not cancel
        the shared call.
        """
        task = self._in_flight.get(key)
        if task is None:
            task = asyncio.ensure_future(self._run(key, factory))
            task.add_done_callback(_consume_result)
            self._in_flight[key] = task
        return await asyncio.shield(task)

    async def _run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        try:
            return await factory()
        finally:
            if self._in_flight.get(key) is asyncio.current_task():
                del self._in_flight[key]

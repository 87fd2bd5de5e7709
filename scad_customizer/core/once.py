"""
Populate-once cache with in-flight sharing.

Concurrent callers asking for the same key await the same population task.
A successful result is kept for the life of the process; a failed population
stores nothing, so a later call starts a fresh attempt.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Generic, Hashable, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class SingleFlight(Generic[K, V]):
    def __init__(self, name: str):
        self.name = name
        self._values: dict[K, V] = {}
        self._inflight: dict[K, asyncio.Task[V]] = {}

    def peek(self, key: K) -> V | None:
        return self._values.get(key)

    def keys(self) -> list[K]:
        return list(self._values)

    def clear(self) -> None:
        self._values.clear()

    async def get(self, key: K, populate: Callable[[], Awaitable[V]]) -> V:
        if key in self._values:
            return self._values[key]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(populate())
            self._inflight[key] = task
            task.add_done_callback(lambda t, k=key: self._settle(k, t))
            logger.debug("%s_populate_started key=%s", self.name, key)
        else:
            logger.debug("%s_populate_joined key=%s", self.name, key)

        # A cancelled waiter must not cancel the population other callers share.
        return await asyncio.shield(task)

    def _settle(self, key: K, task: asyncio.Task[V]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.debug("%s_populate_failed key=%s error=%s", self.name, key, exc)
            return
        self._values[key] = task.result()

"""Bounded execution slots for worker task pools."""

from __future__ import annotations

import asyncio


class TaskSlots:
    """Tracks how many tasks of one kind a worker is running.

    `acquire` waits for a free slot, so a poll loop that acquires before
    polling stops pulling work while the pool is full.
    """

    def __init__(self, limit: int):
        self.limit = max(int(limit), 1)
        self._semaphore = asyncio.Semaphore(self.limit)
        self._in_use = 0
        self.peak = 0

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_use += 1
        self.peak = max(self.peak, self._in_use)

    def release(self) -> None:
        if self._in_use <= 0:
            raise RuntimeError("release() called without a held slot")
        self._in_use -= 1
        self._semaphore.release()

    @property
    def in_use(self) -> int:
        return self._in_use

    @property
    def available(self) -> int:
        return self.limit - self._in_use

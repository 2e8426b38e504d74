from __future__ import annotations

import asyncio


class ConcurrencyGate:
    """Counting semaphore bounding every in-flight remote call of a run.

    Stage 1 and Stage 2 share one gate so the two never jointly exceed
    ``capacity``. Callers acquire before a remote call and release in a
    ``finally`` block, or use the gate as an async context manager.
    """

    def __init__(self, capacity: int = 5):
        self.capacity = max(int(capacity), 1)
        self._semaphore = asyncio.Semaphore(self.capacity)
        self._in_flight = 0
        self._high_water_mark = 0

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def high_water_mark(self) -> int:
        return self._high_water_mark

    @property
    def available(self) -> int:
        return self.capacity - self._in_flight

    async def acquire(self) -> None:
        await self._semaphore.acquire()
        self._in_flight += 1
        self._high_water_mark = max(self._high_water_mark, self._in_flight)

    def release(self) -> None:
        if self._in_flight <= 0:
            raise RuntimeError("ConcurrencyGate released more times than acquired")
        self._in_flight -= 1
        self._semaphore.release()

    async def __aenter__(self) -> "ConcurrencyGate":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.release()

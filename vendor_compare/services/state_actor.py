from __future__ import annotations

import asyncio
import copy
from typing import Callable, Generic, TypeVar

from vendor_compare.services import logger as log_service

S = TypeVar("S")
R = TypeVar("R")

Mutation = Callable[[S], R]


class StateActor(Generic[S]):
    """Single owner of a mutable state object.

    Mutations are queued and applied one at a time by a dedicated task, so
    concurrent Stage-1 cells, detached rankings and snapshot writes never
    interleave inside one another. Readers receive deep copies.
    """

    def __init__(self, state: S, *, name: str = "state"):
        self._state = state
        self._name = name
        self._queue: asyncio.Queue[tuple[Mutation, asyncio.Future]] | None = None
        self._worker: asyncio.Task | None = None

    def _ensure_worker(self) -> asyncio.Queue:
        if self._worker is None or self._worker.done():
            self._queue = asyncio.Queue()
            self._worker = asyncio.get_running_loop().create_task(
                self._run(self._queue), name=f"{self._name}-actor"
            )
        return self._queue

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            mutation, future = await queue.get()
            try:
                result = mutation(self._state)
            except Exception as exc:
                if not future.done():
                    future.set_exception(exc)
            else:
                if not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    async def apply(self, mutation: Mutation[S, R]) -> R:
        """Queue ``mutation`` and wait for the value it returns."""
        queue = self._ensure_worker()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        queue.put_nowait((mutation, future))
        return await future

    async def replace(self, state: S) -> None:
        def swap(_: S) -> None:
            self._state = state

        await self.apply(swap)

    async def snapshot(self) -> S:
        return await self.apply(copy.deepcopy)

    def peek(self) -> S:
        """Deep copy of the current state without queueing."""
        return copy.deepcopy(self._state)

    async def stop(self) -> None:
        if self._worker is None:
            return
        worker, self._worker = self._worker, None
        worker.cancel()
        try:
            await worker
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            log_service.log_event(
                event_type="actor_stop_error",
                message=f"{self._name} actor stopped with an error",
                error=str(exc),
            )

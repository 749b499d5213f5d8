"""
===============================================================================
MODULE: Bounded fire-and-forget dispatcher
===============================================================================

CRC (Component Card)
-------------------------------------------------------------------------------
Component:
  BoundedDispatcher

Responsibilities:
  - Hand items to a handler off the caller's path (bounded asyncio.Queue +
    one drain task).
  - Drop and log when the queue is full; never block the producer.
  - Log and drop handler failures; the producer never sees them.

Collaborators:
  - application/cost_tracker.py (cost entries)
  - infrastructure/analytics.py (query events)
  - crosscutting/metrics.py (drop counter)
===============================================================================
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from .logger import logger
from .metrics import record_dropped

T = TypeVar("T")


class BoundedDispatcher(Generic[T]):
    def __init__(
        self,
        *,
        name: str,
        handler: Callable[[T], Awaitable[None]],
        maxsize: int = 1000,
    ) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._name = name
        self._handler = handler
        self._queue: "asyncio.Queue[T]" = asyncio.Queue(maxsize=maxsize)
        self._maxsize = maxsize
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.dropped = 0

    def submit(self, item: T) -> bool:
        """R: Enqueue without waiting. False when the item was dropped."""
        self._rebind_if_loop_changed()
        try:
            self._queue.put_nowait(item)
        except asyncio.QueueFull:
            self.dropped += 1
            record_dropped(self._name)
            logger.warning("Dispatcher queue full, item dropped", extra={"sink": self._name})
            return False
        self._ensure_worker()
        return True

    def _rebind_if_loop_changed(self) -> None:
        # asyncio.Queue binds to the first loop that waits on it; a sync facade
        # running one loop per call needs a fresh queue per loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._loop is not None and self._loop is not loop:
            self._queue = asyncio.Queue(maxsize=self._maxsize)
            self._worker = None
        self._loop = loop

    def _ensure_worker(self) -> None:
        if self._worker is not None and not self._worker.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; items wait until the next submit/flush inside one.
            return
        self._worker = loop.create_task(self._drain(), name=f"dispatch:{self._name}")

    async def _drain(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                await self._handler(item)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self.dropped += 1
                record_dropped(self._name)
                logger.warning(
                    "Dispatcher handler failed, item dropped",
                    extra={"sink": self._name, "error": str(exc)},
                )
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """R: Waits until every queued item has been handled."""
        self._rebind_if_loop_changed()
        if self._queue.empty():
            return
        self._ensure_worker()
        await self._queue.join()

    async def aclose(self) -> None:
        await self.flush()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

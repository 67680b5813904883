"""
Cycle scheduler: serializes pipeline cycles.

One in-flight flag plus a FIFO queue of pending run requests.  Each
``trigger`` enqueues a request and returns a future that resolves when
that request's cycle finishes; a single drain task runs queued cycles one
at a time.  An exception or timeout inside a cycle is logged and resolves
the request with ``None``; it never leaves the flag stuck or kills the
drain loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class CycleScheduler:

    def __init__(
        self,
        run_cycle: Callable[[], Awaitable[Any]],
        *,
        queue_cap: int = 10,
        cycle_timeout: float = 165.0,
    ):
        self._run_cycle = run_cycle
        self.queue_cap = queue_cap
        self.cycle_timeout = cycle_timeout
        self._queue: deque[asyncio.Future] = deque()
        self._in_flight = False
        self._drain_task: Optional[asyncio.Task] = None
        self.completed = 0
        self.failed = 0

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def pending(self) -> int:
        return len(self._queue)

    def trigger(self) -> asyncio.Future:
        """Queue one cycle; the future resolves with its result (``None`` on failure)."""
        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        if len(self._queue) >= self.queue_cap:
            logger.warning("Cycle queue full (%d pending), dropping trigger", len(self._queue))
            fut.set_result(None)
            return fut
        self._queue.append(fut)
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name="cycle-drain")
        return fut

    async def run_once(self) -> Any:
        return await self.trigger()

    async def _drain(self) -> None:
        self._in_flight = True
        fut: Optional[asyncio.Future] = None
        try:
            while self._queue:
                fut = self._queue.popleft()
                result = None
                try:
                    result = await asyncio.wait_for(self._run_cycle(), timeout=self.cycle_timeout)
                    self.completed += 1
                except asyncio.TimeoutError:
                    self.failed += 1
                    logger.error("Cycle timed out after %.0fs", self.cycle_timeout)
                except Exception:
                    self.failed += 1
                    logger.exception("Cycle failed")
                if not fut.done():
                    fut.set_result(result)
        finally:
            self._in_flight = False
            if fut is not None and not fut.done():
                fut.cancel()
            while self._queue:
                self._queue.popleft().cancel()

    async def run_forever(self, interval_seconds: float, duration_seconds: Optional[float] = None) -> None:
        """Trigger a cycle every ``interval_seconds`` until ``duration_seconds`` has elapsed."""
        deadline = time.monotonic() + duration_seconds if duration_seconds is not None else None
        while deadline is None or time.monotonic() < deadline:
            started = time.monotonic()
            await self.trigger()
            elapsed = time.monotonic() - started
            sleep_secs = max(0.0, interval_seconds - elapsed)
            if deadline is not None:
                sleep_secs = min(sleep_secs, max(0.0, deadline - time.monotonic()))
            if sleep_secs > 0:
                await asyncio.sleep(sleep_secs)
            elif elapsed > interval_seconds:
                logger.warning("Cycle took %.1fs, longer than the %.0fs interval", elapsed, interval_seconds)

    async def stop(self) -> None:
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

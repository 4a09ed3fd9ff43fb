"""Global limiter for outbound provider lookups.

Two constraints apply at once: at most ``max_concurrent`` lookups in
flight, and consecutive lookup starts at least ``1 / qps`` seconds apart.
Waiters are served in submission order (asyncio semaphores and locks wake
waiters FIFO).
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from loguru import logger

T = TypeVar("T")


class LookupLimiter:
    """Concurrency + start-rate limiter shared by every lookup in the process."""

    def __init__(self, max_concurrent: int = 3, qps: float = 1.0) -> None:
        if max_concurrent < 1:
            msg = f"max_concurrent must be at least 1, got {max_concurrent}"
            raise ValueError(msg)
        if qps <= 0:
            msg = f"qps must be positive, got {qps}"
            raise ValueError(msg)
        self.max_concurrent = max_concurrent
        self.min_interval = 1.0 / qps
        self._slots = asyncio.Semaphore(max_concurrent)
        self._start_lock = asyncio.Lock()
        self._last_start: float | None = None
        self._active = 0
        self._waiting = 0

    async def run(self, task: Callable[[], Awaitable[T]]) -> T:
        """Run ``task`` once a slot is free and the start interval has elapsed.

        Args:
            task: Zero-argument coroutine factory performing the lookup.

        Returns:
            Whatever the task returns; exceptions propagate unchanged.
        """
        self._waiting += 1
        try:
            await self._slots.acquire()
        finally:
            self._waiting -= 1
        try:
            await self._wait_for_start()
            self._active += 1
            try:
                return await task()
            finally:
                self._active -= 1
        finally:
            self._slots.release()

    async def _wait_for_start(self) -> None:
        loop = asyncio.get_running_loop()
        async with self._start_lock:
            if self._last_start is not None:
                delay = self._last_start + self.min_interval - loop.time()
                if delay > 0:
                    logger.trace(f"Lookup limiter waiting {delay:.3f}s before next start")
                    await asyncio.sleep(delay)
            self._last_start = loop.time()

    def status(self) -> dict[str, float | int]:
        """Snapshot of limiter state for diagnostics."""
        return {
            "active": self._active,
            "waiting": self._waiting,
            "max_concurrent": self.max_concurrent,
            "min_interval_seconds": self.min_interval,
        }

"""In-process job queue.

Used when Redis is disabled or unreachable. Jobs live only as long as the
process; retries are scheduled on the event loop with the same backoff
schedule the durable backend uses.
"""

import asyncio
import itertools
from dataclasses import replace
from typing import Any

from loguru import logger

from fleet_geocoder.lib.job_queue.base import (
    GeocodeJobData,
    JobHandle,
    JobOptions,
    JobState,
    Processor,
    QueueBackend,
    StopProcessor,
    new_job_id,
    priority_rank,
)


class MemoryQueueBackend(QueueBackend):
    """Priority queue of jobs held in a dict, consumed by asyncio tasks."""

    def __init__(self) -> None:
        self._jobs: dict[str, JobHandle] = {}
        self._ready: asyncio.PriorityQueue[tuple[int, int, str]] = asyncio.PriorityQueue()
        self._seq = itertools.count()
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._workers: list[asyncio.Task[None]] = []
        self._completed = 0
        self._failed = 0

    @property
    def driver(self) -> str:
        return "memory"

    async def add(self, job_id: str | None, payload: GeocodeJobData, options: JobOptions) -> JobHandle:
        job_id = job_id or new_job_id()
        existing = self._jobs.get(job_id)
        if existing is not None:
            return existing

        handle = JobHandle(id=job_id, data=payload, options=options)
        self._jobs[job_id] = handle
        if options.delay_ms > 0:
            self._schedule(handle, options.delay_ms / 1000)
        else:
            self._push(job_id)
        return handle

    async def get_job(self, job_id: str) -> JobHandle | None:
        return self._jobs.get(job_id)

    async def update(self, handle: JobHandle, patch: dict[str, Any]) -> JobHandle:
        # No await between read and write, so concurrent merges cannot interleave
        current = self._jobs.get(handle.id)
        if current is None:
            logger.debug(f"Job {handle.id} finished before the merge; re-creating it")
            fresh = handle.data.with_position_ids([]).merged(patch)
            return await self.add(handle.id, fresh, replace(handle.options, delay_ms=0))
        current.data = current.data.merged(patch)
        return current

    async def register_processor(self, processor: Processor, concurrency: int = 1) -> StopProcessor:
        tasks = [
            asyncio.create_task(self._consume(processor), name=f"memory-queue-worker-{i}")
            for i in range(max(concurrency, 1))
        ]
        self._workers.extend(tasks)
        logger.info(f"In-memory geocode queue consuming with concurrency {len(tasks)}")

        async def stop() -> None:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            for task in tasks:
                if task in self._workers:
                    self._workers.remove(task)

        return stop

    async def close(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        workers = list(self._workers)
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

    async def stats(self) -> dict[str, Any]:
        counts = {str(state): 0 for state in JobState}
        for handle in self._jobs.values():
            counts[str(handle.state)] += 1
        counts["completed"] = self._completed
        counts["failed"] = self._failed
        return {"driver": self.driver, **counts}

    def _push(self, job_id: str) -> None:
        self._timers.pop(job_id, None)
        handle = self._jobs.get(job_id)
        if handle is None:
            return
        handle.state = JobState.WAITING
        self._ready.put_nowait((priority_rank(handle.options.priority), next(self._seq), job_id))

    def _schedule(self, handle: JobHandle, delay_seconds: float) -> None:
        handle.state = JobState.DELAYED
        loop = asyncio.get_running_loop()
        self._timers[handle.id] = loop.call_later(delay_seconds, self._push, handle.id)

    async def _consume(self, processor: Processor) -> None:
        while True:
            _, _, job_id = await self._ready.get()
            handle = self._jobs.get(job_id)
            if handle is None or handle.state != JobState.WAITING:
                continue
            await self._run(processor, handle)

    async def _run(self, processor: Processor, handle: JobHandle) -> None:
        handle.state = JobState.ACTIVE
        handle.processed_ids = None
        try:
            await processor(handle)
        except asyncio.CancelledError:
            # Put the job back so a later consumer can pick it up
            self._push(handle.id)
            raise
        except Exception as e:
            self._fail(handle, e)
        else:
            self._completed += 1
            if handle.carry_over(handle.processed_ids):
                logger.info(
                    f"Job {handle.id} completed; {len(handle.data.position_ids)} id(s) merged meanwhile requeued"
                )
                self._push(handle.id)
                return
            handle.state = JobState.COMPLETED
            self._jobs.pop(handle.id, None)

    def _fail(self, handle: JobHandle, error: Exception) -> None:
        handle.attempts_made += 1
        handle.last_error = str(error)
        if handle.attempts_made >= (handle.options.attempts or 1):
            self._failed += 1
            logger.warning(f"Job {handle.id} exhausted {handle.attempts_made} attempt(s): {error}")
            if handle.carry_over(handle.processed_ids):
                self._push(handle.id)
                return
            handle.state = JobState.FAILED
            self._jobs.pop(handle.id, None)
            return
        delay = handle.options.backoff.delay_seconds_for(handle.attempts_made)
        logger.info(f"Job {handle.id} attempt {handle.attempts_made} failed, retrying in {delay}s: {error}")
        self._schedule(handle, delay)

"""Durable job queue on Redis.

Layout under ``{prefix}``:

- ``{prefix}:job:{id}``: the job handle as JSON.
- ``{prefix}:ready:{priority}``: sorted set of job ids scored by the epoch
  milliseconds at which each job becomes ready.
- ``{prefix}:active``: sorted set of claimed job ids scored by the epoch
  milliseconds at which their lease expires.

A consumer claims a job by moving it from a ready set to the active set in
one transaction, so two consumers never both win the same job. The
consumer keeps renewing the lease while the processor runs. A job whose
lease expires (its process died) goes back to its ready set, and on
startup any job key found in neither set is rescheduled. The
high-priority set is always drained before the normal one, and ties in
the score keep FIFO order.

If Redis stops answering, the backend switches for the rest of the process
to an in-memory fallback and replays its processor registrations there.
Callers are never told.
"""

import asyncio
import json
import time
from collections.abc import Awaitable, Callable
from dataclasses import replace
from typing import Any, TypeVar

import redis.asyncio as aioredis
from loguru import logger
from redis.asyncio.client import Pipeline
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from fleet_geocoder.lib.geocoder.errors import BackendUnavailableError
from fleet_geocoder.lib.job_queue.base import (
    GeocodeJobData,
    JobHandle,
    JobOptions,
    JobState,
    Priority,
    Processor,
    QueueBackend,
    StopProcessor,
    new_job_id,
)
from fleet_geocoder.lib.job_queue.memory import MemoryQueueBackend

T = TypeVar("T")

# Errors that mean the broker is gone, not that a command was wrong
UNAVAILABLE_ERRORS: tuple[type[BaseException], ...] = (RedisConnectionError, RedisTimeoutError, OSError)

DEFAULT_POLL_INTERVAL = 0.5
DEFAULT_LEASE_MS = 60_000
# Ready ids tried per priority on each claim pass
_CLAIM_CANDIDATES = 5
# WATCH conflicts tolerated on one ready set before moving on
_CLAIM_RETRIES = 3
# Dispatch order across ready sets
_PRIORITY_ORDER = (Priority.HIGH, Priority.NORMAL)

OnCommit = Callable[[Pipeline, JobHandle | None], None]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _mark_waiting(current: JobHandle) -> JobHandle:
    current.state = JobState.WAITING
    return current


async def probe_redis(client: aioredis.Redis) -> None:
    """PING the broker.

    Raises:
        BackendUnavailableError: Redis did not answer.
    """
    try:
        await client.ping()
    except UNAVAILABLE_ERRORS as e:
        raise BackendUnavailableError(f"Redis did not answer PING: {e}") from e


class RedisQueueBackend(QueueBackend):
    """Redis-backed queue with transparent in-memory degradation.

    Args:
        client: ``redis.asyncio`` client created with ``decode_responses=True``.
        prefix: Key prefix for every key this backend writes.
        fallback: Memory backend to switch to when Redis is unreachable.
        poll_interval: Seconds a consumer sleeps when no job is ready.
        lease_ms: How long a claimed job stays owned by its consumer
            without a renewal before another process may take it over.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        prefix: str = "geocode",
        fallback: MemoryQueueBackend | None = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        lease_ms: int = DEFAULT_LEASE_MS,
    ) -> None:
        self._redis = client
        self._prefix = prefix
        self._fallback = fallback or MemoryQueueBackend()
        self._poll_interval = poll_interval
        self._lease_ms = lease_ms
        self._degraded = False
        self._unavailable: BackendUnavailableError | None = None
        self._recovered = False
        self._registrations: list[tuple[Processor, int]] = []
        self._workers: list[asyncio.Task[None]] = []
        self._fallback_stops: list[StopProcessor] = []
        self._closed = False

    @property
    def driver(self) -> str:
        return "memory" if self._degraded else "redis"

    @property
    def degraded(self) -> bool:
        return self._degraded

    @property
    def unavailable_error(self) -> BackendUnavailableError | None:
        """The broker failure that caused the switch to memory, if any."""
        return self._unavailable

    @property
    def _active_key(self) -> str:
        return f"{self._prefix}:active"

    def _job_key(self, job_id: str) -> str:
        return f"{self._prefix}:job:{job_id}"

    def _ready_key(self, priority: str) -> str:
        bucket = Priority.HIGH if priority == Priority.HIGH else Priority.NORMAL
        return f"{self._prefix}:ready:{bucket}"

    async def add(self, job_id: str | None, payload: GeocodeJobData, options: JobOptions) -> JobHandle:
        job_id = job_id or new_job_id()

        async def _add() -> JobHandle:
            state = JobState.DELAYED if options.delay_ms > 0 else JobState.WAITING
            handle = JobHandle(id=job_id, data=payload, options=options, state=state)
            while True:
                if await self._create(handle):
                    return handle
                existing = await self._load(job_id)
                if existing is not None:
                    await self._ensure_scheduled(existing)
                    return existing
                # Removed between the existence check and the read

        return await self._call(_add, lambda: self._fallback.add(job_id, payload, options))

    async def get_job(self, job_id: str) -> JobHandle | None:
        return await self._call(lambda: self._load(job_id), lambda: self._fallback.get_job(job_id))

    async def update(self, handle: JobHandle, patch: dict[str, Any]) -> JobHandle:
        async def _update() -> JobHandle:
            def apply(current: JobHandle) -> JobHandle:
                current.data = current.data.merged(patch)
                return current

            while True:
                updated = await self._mutate(handle.id, apply)
                if updated is not None:
                    await self._ensure_scheduled(updated)
                    return updated
                fresh = JobHandle(
                    id=handle.id,
                    data=handle.data.with_position_ids([]).merged(patch),
                    options=replace(handle.options, delay_ms=0),
                )
                if await self._create(fresh):
                    logger.debug(f"Job {handle.id} finished before the merge; re-created it")
                    return fresh

        return await self._call(_update, lambda: self._fallback.update(handle, patch))

    async def register_processor(self, processor: Processor, concurrency: int = 1) -> StopProcessor:
        concurrency = max(concurrency, 1)
        if not self._recovered and not self._degraded:
            await self._call(self.recover_stalled, self._no_recovery)
            self._recovered = True

        self._registrations.append((processor, concurrency))
        if self._degraded:
            fallback_stop = await self._fallback.register_processor(processor, concurrency)
            self._fallback_stops.append(fallback_stop)
            tasks: list[asyncio.Task[None]] = []
        else:
            fallback_stop = None
            tasks = [
                asyncio.create_task(self._consume(processor), name=f"redis-queue-worker-{i}")
                for i in range(concurrency)
            ]
            self._workers.extend(tasks)
            logger.info(f"Redis geocode queue consuming with concurrency {concurrency}")

        registration = (processor, concurrency)

        async def stop() -> None:
            if registration in self._registrations:
                self._registrations.remove(registration)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if fallback_stop is not None:
                await fallback_stop()

        return stop

    async def close(self) -> None:
        self._closed = True
        workers = list(self._workers)
        self._workers.clear()
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        await self._fallback.close()
        try:
            await self._redis.aclose()
        except UNAVAILABLE_ERRORS as e:
            logger.debug(f"Error closing Redis client: {e}")

    async def stats(self) -> dict[str, Any]:
        async def _stats() -> dict[str, Any]:
            counts: dict[str, Any] = {"driver": "redis"}
            for priority in _PRIORITY_ORDER:
                counts[f"ready_{priority}"] = await self._redis.zcard(self._ready_key(priority))
            counts["waiting"] = sum(counts[f"ready_{p}"] for p in _PRIORITY_ORDER)
            counts["active"] = await self._redis.zcard(self._active_key)
            return counts

        async def _fallback_stats() -> dict[str, Any]:
            counts = await self._fallback.stats()
            if self._unavailable is not None:
                counts["unavailable_reason"] = str(self._unavailable)
            return counts

        return await self._call(_stats, _fallback_stats)

    async def recover_stalled(self) -> int:
        """Reschedule jobs no consumer will ever run.

        Covers jobs whose lease expired and job keys that sit in neither a
        ready set nor the active set (a process died mid-claim or mid-add).
        Runs once when the first processor registers.

        Returns:
            Number of jobs put back on a ready set.
        """
        requeued = await self._requeue_expired()
        job_prefix = self._job_key("")
        async for key in self._redis.scan_iter(match=f"{job_prefix}*"):
            handle = await self._load(key.removeprefix(job_prefix))
            if handle is not None and await self._ensure_scheduled(handle):
                requeued += 1
        if requeued:
            logger.warning(f"Recovered {requeued} stalled geocode job(s)")
        return requeued

    @staticmethod
    async def _no_recovery() -> int:
        return 0

    async def _call(self, op: Callable[[], Awaitable[T]], fallback: Callable[[], Awaitable[T]]) -> T:
        if self._degraded:
            return await fallback()
        try:
            return await self._broker(op)
        except BackendUnavailableError as e:
            await self._degrade(e)
            return await fallback()

    @staticmethod
    async def _broker(op: Callable[[], Awaitable[T]]) -> T:
        try:
            return await op()
        except UNAVAILABLE_ERRORS as e:
            raise BackendUnavailableError(f"Redis queue unavailable: {e}") from e

    async def _degrade(self, error: BackendUnavailableError) -> None:
        if self._degraded:
            return
        self._degraded = True
        self._unavailable = error
        logger.warning(f"{error}; switching to in-memory queue")
        for processor, concurrency in list(self._registrations):
            self._fallback_stops.append(await self._fallback.register_processor(processor, concurrency))

    async def _load(self, job_id: str) -> JobHandle | None:
        raw = await self._redis.get(self._job_key(job_id))
        if raw is None:
            return None
        return JobHandle.from_dict(json.loads(raw))

    async def _create(self, handle: JobHandle) -> bool:
        """Store and schedule a new job in one transaction; False if the id is taken."""
        key = self._job_key(handle.id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    if await pipe.exists(key):
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.set(key, json.dumps(handle.to_dict()))
                    pipe.zadd(
                        self._ready_key(handle.options.priority),
                        {handle.id: _now_ms() + handle.options.delay_ms},
                    )
                    await pipe.execute()
                    return True
                except WatchError:
                    continue

    async def _mutate(
        self,
        job_id: str,
        fn: Callable[[JobHandle], JobHandle | None],
        on_commit: OnCommit | None = None,
    ) -> JobHandle | None:
        """Read-modify-write a job under WATCH; ``fn`` returning None deletes it.

        ``on_commit`` queues further commands into the same transaction. It
        also runs (with None) when the job is already gone.
        """
        key = self._job_key(job_id)
        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(key)
                    raw = await pipe.get(key)
                    if raw is None and on_commit is None:
                        await pipe.unwatch()
                        return None
                    result = fn(JobHandle.from_dict(json.loads(raw))) if raw is not None else None
                    pipe.multi()
                    if raw is not None:
                        if result is None:
                            pipe.delete(key)
                        else:
                            pipe.set(key, json.dumps(result.to_dict()))
                    if on_commit is not None:
                        on_commit(pipe, result)
                    await pipe.execute()
                    return result
                except WatchError:
                    logger.trace(f"Concurrent modification of {key}, retrying")
                    continue

    async def _is_scheduled(self, job_id: str) -> bool:
        """Whether the job is on a ready set or held under a live lease."""
        for priority in _PRIORITY_ORDER:
            if await self._redis.zscore(self._ready_key(priority), job_id) is not None:
                return True
        lease = await self._redis.zscore(self._active_key, job_id)
        return lease is not None and lease > _now_ms()

    async def _ensure_scheduled(self, handle: JobHandle) -> bool:
        """Put a stalled job back on its ready set; True if it had stalled."""
        if await self._is_scheduled(handle.id):
            return False

        def requeue(pipe: Pipeline, result: JobHandle | None) -> None:
            pipe.zrem(self._active_key, handle.id)
            if result is not None:
                pipe.zadd(self._ready_key(result.options.priority), {handle.id: _now_ms()})

        if await self._mutate(handle.id, _mark_waiting, requeue) is None:
            return False
        logger.warning(f"Job {handle.id} was stalled (state={handle.state}); rescheduled")
        return True

    async def _requeue_expired(self) -> int:
        expired = await self._redis.zrangebyscore(self._active_key, "-inf", _now_ms())
        requeued = 0
        for job_id in expired:
            # The ZREM that succeeds owns the recovery
            if await self._redis.zrem(self._active_key, job_id) != 1:
                continue

            def requeue(pipe: Pipeline, result: JobHandle | None, job_id: str = job_id) -> None:
                pipe.zrem(self._active_key, job_id)
                if result is not None:
                    pipe.zadd(self._ready_key(result.options.priority), {job_id: _now_ms()})

            if await self._mutate(job_id, _mark_waiting, requeue) is not None:
                requeued += 1
                logger.warning(f"Lease on job {job_id} expired; requeued")
        return requeued

    async def _take(self, ready_key: str, job_id: str) -> bool:
        """Move one id from a ready set to the active set; False if another consumer won."""
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(_CLAIM_RETRIES):
                try:
                    await pipe.watch(ready_key)
                    if await pipe.zscore(ready_key, job_id) is None:
                        await pipe.unwatch()
                        return False
                    pipe.multi()
                    pipe.zrem(ready_key, job_id)
                    pipe.zadd(self._active_key, {job_id: _now_ms() + self._lease_ms})
                    await pipe.execute()
                    return True
                except WatchError:
                    continue
        return False

    async def _claim(self) -> JobHandle | None:
        await self._requeue_expired()
        now = _now_ms()
        for priority in _PRIORITY_ORDER:
            ready_key = self._ready_key(priority)
            ids = await self._redis.zrangebyscore(ready_key, "-inf", now, start=0, num=_CLAIM_CANDIDATES)
            for job_id in ids:
                if not await self._take(ready_key, job_id):
                    continue

                def activate(current: JobHandle) -> JobHandle:
                    current.state = JobState.ACTIVE
                    return current

                def drop_lease(pipe: Pipeline, result: JobHandle | None, job_id: str = job_id) -> None:
                    if result is None:
                        pipe.zrem(self._active_key, job_id)

                handle = await self._mutate(job_id, activate, drop_lease)
                if handle is not None:
                    return handle
        return None

    async def _consume(self, processor: Processor) -> None:
        while not self._closed:
            try:
                handle = await self._broker(self._claim)
                if handle is None:
                    await asyncio.sleep(self._poll_interval)
                    continue
                await self._broker(lambda: self._run(processor, handle))
            except asyncio.CancelledError:
                raise
            except BackendUnavailableError as e:
                await self._degrade(e)
                return
            except Exception:
                logger.exception("Redis queue consumer error")
                await asyncio.sleep(self._poll_interval)

    async def _heartbeat(self, job_id: str) -> None:
        interval = self._lease_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                await self._redis.zadd(self._active_key, {job_id: _now_ms() + self._lease_ms}, xx=True)
            except UNAVAILABLE_ERRORS as e:
                logger.debug(f"Lease renewal for job {job_id} failed: {e}")
                return

    async def _run(self, processor: Processor, handle: JobHandle) -> None:
        heartbeat = asyncio.create_task(self._heartbeat(handle.id), name=f"redis-queue-lease-{handle.id}")
        try:
            await processor(handle)
        except asyncio.CancelledError:
            await self._release(handle)
            raise
        except Exception as e:
            await self._fail(handle, e)
        else:
            await self._complete(handle)
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)

    async def _release(self, handle: JobHandle) -> None:
        def requeue(pipe: Pipeline, result: JobHandle | None) -> None:
            pipe.zrem(self._active_key, handle.id)
            if result is not None:
                pipe.zadd(self._ready_key(result.options.priority), {handle.id: _now_ms()})

        await self._mutate(handle.id, _mark_waiting, requeue)

    async def _complete(self, handle: JobHandle) -> None:
        def finish(current: JobHandle) -> JobHandle | None:
            return current if current.carry_over(handle.processed_ids) else None

        def schedule(pipe: Pipeline, result: JobHandle | None) -> None:
            pipe.zrem(self._active_key, handle.id)
            if result is not None:
                pipe.zadd(self._ready_key(result.options.priority), {handle.id: _now_ms()})

        remaining = await self._mutate(handle.id, finish, schedule)
        if remaining is not None:
            logger.info(
                f"Job {handle.id} completed; {len(remaining.data.position_ids)} id(s) merged meanwhile requeued"
            )

    async def _fail(self, handle: JobHandle, error: Exception) -> None:
        attempts = handle.attempts_made + 1
        exhausted = attempts >= (handle.options.attempts or 1)
        delay_ms = 0 if exhausted else handle.options.backoff.delay_for(attempts)

        def record(current: JobHandle) -> JobHandle | None:
            current.attempts_made = attempts
            current.last_error = str(error)
            if exhausted:
                return current if current.carry_over(handle.processed_ids) else None
            current.state = JobState.DELAYED
            return current

        def schedule(pipe: Pipeline, result: JobHandle | None) -> None:
            pipe.zrem(self._active_key, handle.id)
            if result is not None:
                pipe.zadd(self._ready_key(handle.options.priority), {handle.id: _now_ms() + delay_ms})

        await self._mutate(handle.id, record, schedule)
        if exhausted:
            logger.warning(f"Job {handle.id} exhausted {attempts} attempt(s): {error}")
        else:
            logger.info(f"Job {handle.id} attempt {attempts} failed, retrying in {delay_ms}ms: {error}")

"""Geocode job queue with a durable (Redis) and an in-memory strategy.

Public API:
    - QueueBackend: Abstract backend contract
    - RedisQueueBackend / MemoryQueueBackend: The two strategies
    - create_queue_backend: Probe Redis once and pick a strategy
    - BackoffSchedule: Retry delays shared by both strategies
    - GeocodeJobData / JobOptions / JobHandle: Job types
"""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING

import redis.asyncio as aioredis
from loguru import logger

from fleet_geocoder.lib.geocoder.errors import BackendUnavailableError
from fleet_geocoder.lib.job_queue.backoff import DEFAULT_BACKOFF_MS, BackoffSchedule
from fleet_geocoder.lib.job_queue.base import (
    PRIORITY_RANK,
    GeocodeJobData,
    JobHandle,
    JobOptions,
    JobReason,
    JobState,
    Priority,
    Processor,
    QueueBackend,
    StopProcessor,
    merge_position_ids,
    unhandled_position_ids,
)
from fleet_geocoder.lib.job_queue.memory import MemoryQueueBackend
from fleet_geocoder.lib.job_queue.redis_backend import UNAVAILABLE_ERRORS, RedisQueueBackend, probe_redis

if TYPE_CHECKING:
    from fleet_geocoder.core.config import Settings

PROBE_TIMEOUT_SECONDS = 2.0


async def create_queue_backend(settings: Settings, redis_client: aioredis.Redis | None = None) -> QueueBackend:
    """Select the queue strategy for this process.

    Redis is probed once with ``PING``. If the queue is disabled or Redis
    does not answer, the in-memory backend is returned; startup never fails
    because of the broker.

    Args:
        settings: Application settings.
        redis_client: Optional pre-built client (injected in tests).

    Returns:
        The backend to use.
    """
    if settings.geocode_queue_disabled:
        logger.info("Geocode queue disabled by configuration; using in-memory queue")
        return MemoryQueueBackend()

    client = redis_client or aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_connect_timeout=PROBE_TIMEOUT_SECONDS,
        socket_timeout=PROBE_TIMEOUT_SECONDS,
    )
    try:
        await probe_redis(client)
    except BackendUnavailableError as e:
        logger.warning(f"{e}; using in-memory geocode queue")
        with contextlib.suppress(*UNAVAILABLE_ERRORS):
            await client.aclose()
        return MemoryQueueBackend()

    logger.info(f"Geocode queue connected to Redis (prefix={settings.geocode_queue_prefix!r})")
    return RedisQueueBackend(
        client,
        prefix=settings.geocode_queue_prefix,
        fallback=MemoryQueueBackend(),
        lease_ms=settings.geocode_job_lease_ms,
    )


__all__ = [
    "DEFAULT_BACKOFF_MS",
    "PRIORITY_RANK",
    "BackoffSchedule",
    "GeocodeJobData",
    "JobHandle",
    "JobOptions",
    "JobReason",
    "JobState",
    "MemoryQueueBackend",
    "Priority",
    "Processor",
    "QueueBackend",
    "RedisQueueBackend",
    "StopProcessor",
    "create_queue_backend",
    "merge_position_ids",
    "probe_redis",
    "unhandled_position_ids",
]

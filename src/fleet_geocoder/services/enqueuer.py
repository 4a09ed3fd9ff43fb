"""Geocode enqueuer: turns positions into at most one job per grid cell.

Called from the position-ingestion path, so :meth:`GeocodeEnqueuer.enqueue`
never raises: invalid coordinates and broker failures are logged and
reported as ``None``.
"""

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager

from loguru import logger

from fleet_geocoder.lib.geocoder.errors import CoordinateValidationError
from fleet_geocoder.lib.geocoder.grid import DEFAULT_PRECISION, build_grid_key, is_geocodable, normalize_coordinate
from fleet_geocoder.lib.job_queue import (
    BackoffSchedule,
    GeocodeJobData,
    JobHandle,
    JobOptions,
    JobReason,
    Priority,
    QueueBackend,
    merge_position_ids,
)
from fleet_geocoder.services.position_store import PositionRecord

JOB_ID_PREFIX = "geocode:grid:"


def job_id_for(grid_key: str) -> str:
    """Deterministic job id for a grid cell."""
    return f"{JOB_ID_PREFIX}{grid_key}"


class GeocodeEnqueuer:
    """Coalesce reverse-geocode requests into per-cell queue jobs.

    Args:
        queue: Queue backend jobs are submitted to.
        precision: Grid precision for cell keys.
        backoff: Retry schedule attached to new jobs.
        max_attempts: Attempt budget for new jobs (defaults to the
            schedule's budget).
    """

    def __init__(
        self,
        queue: QueueBackend,
        *,
        precision: int = DEFAULT_PRECISION,
        backoff: BackoffSchedule | None = None,
        max_attempts: int | None = None,
    ) -> None:
        self._queue = queue
        self._precision = precision
        self._backoff = backoff or BackoffSchedule()
        self._max_attempts = max_attempts
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @property
    def precision(self) -> int:
        return self._precision

    @asynccontextmanager
    async def _key_lock(self, grid_key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(grid_key, asyncio.Lock())
        self._lock_users[grid_key] = self._lock_users.get(grid_key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[grid_key] -= 1
            if self._lock_users[grid_key] == 0:
                del self._lock_users[grid_key]
                del self._locks[grid_key]

    async def enqueue(
        self,
        lat: float,
        lng: float,
        position_id: str | int | None = None,
        position_ids: Iterable[str | int] = (),
        device_id: int | str | None = None,
        reason: str = JobReason.MANUAL,
        priority: str = Priority.NORMAL,
        delay_ms: int = 0,
    ) -> JobHandle | None:
        """Submit positions for reverse geocoding.

        If a job for the same grid cell is already queued the ids are
        merged into it; otherwise a new job is added.

        Args:
            lat: Latitude of the fix.
            lng: Longitude of the fix.
            position_id: A single position id.
            position_ids: Further position ids in the same cell.
            device_id: Device that produced the fix.
            reason: Why the job is submitted.
            priority: ``normal`` or ``high``.
            delay_ms: Delay before a new job becomes ready.

        Returns:
            The job handle, or None when the coordinates are not geocodable
            or the queue failed.
        """
        if not is_geocodable(lat, lng):
            error = CoordinateValidationError(f"Coordinates are not geocodable: ({lat}, {lng})")
            logger.debug(f"Skipping enqueue for position {position_id}: {error}")
            return None

        grid_key = build_grid_key(lat, lng, self._precision)
        if grid_key is None:
            return None
        ids = merge_position_ids([position_id] if position_id is not None else [], position_ids)

        try:
            async with self._key_lock(grid_key):
                job_id = job_id_for(grid_key)
                existing = await self._queue.get_job(job_id)
                if existing is not None:
                    if not ids:
                        return existing
                    return await self._queue.update(existing, {"position_ids": ids})

                payload = GeocodeJobData(
                    grid_key=grid_key,
                    lat=normalize_coordinate(lat, self._precision),
                    lng=normalize_coordinate(lng, self._precision),
                    position_ids=ids,
                    device_id=device_id,
                    reason=reason,
                    priority=priority,
                )
                options = JobOptions(
                    priority=priority,
                    delay_ms=delay_ms,
                    attempts=self._max_attempts,
                    backoff=self._backoff,
                )
                return await self._queue.add(job_id, payload, options)
        except Exception:
            logger.exception(
                f"Failed to enqueue geocode job (grid_key={grid_key}, position_id={position_id}, device_id={device_id})"
            )
            return None

    async def enqueue_positions(
        self,
        positions: Iterable[PositionRecord],
        reason: str = JobReason.AUTO_SCAN,
        priority: str = Priority.NORMAL,
    ) -> int:
        """Enqueue a batch of positions, one call per position.

        Returns:
            Number of positions that landed in a job.
        """
        queued = 0
        for position in positions:
            handle = await self.enqueue(
                position.latitude,
                position.longitude,
                position_id=position.id,
                device_id=position.device_id,
                reason=reason,
                priority=priority,
            )
            if handle is not None:
                queued += 1
        return queued

"""Geocode worker pool: resolves one grid cell per job.

Resolution order for a job: the address cache, then the device's own
recent resolved position (reuse distance), then the provider. Whatever
answers, the address is written to every position id merged into the job,
including ids merged while the lookup ran. The ids written are reported back
through `JobHandle.processed_ids` so the queue requeues any merged later.
"""

import asyncio
import math
from collections.abc import Awaitable
from dataclasses import dataclass, field

from loguru import logger

from fleet_geocoder.lib.geocoder.cache import GeocodeCache
from fleet_geocoder.lib.geocoder.client import ProviderClient
from fleet_geocoder.lib.geocoder.errors import CoordinateValidationError, ExhaustedRetriesError
from fleet_geocoder.lib.job_queue import JobHandle, QueueBackend, StopProcessor, merge_position_ids
from fleet_geocoder.services.position_store import PositionStore

EARTH_RADIUS_METERS = 6_371_000.0

_OUTCOME_EVENTS: dict[str, str] = {
    "cached": "geocode_cache_hit",
    "resolved": "geocode_success",
    "reuse_distance": "geocode_reuse_distance",
    "invalid": "geocode_invalid_coordinates",
}


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two points in meters."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(a)))


@dataclass
class JobResult:
    """Outcome of a processed job."""

    status: str
    grid_key: str
    address: str | None = None
    provider: str | None = None
    position_ids: list[str] = field(default_factory=list)
    written: int = 0


class GeocodeWorkerPool:
    """Consume geocode jobs from the queue.

    Args:
        queue: Queue backend to consume.
        cache: Grid-keyed address cache.
        client: Provider client (shared limiter).
        store: Position store for address writes.
        concurrency: Jobs processed at once.
        reuse_distance_meters: Reuse the device's last resolved address
            within this distance; 0 disables.
    """

    def __init__(
        self,
        queue: QueueBackend,
        cache: GeocodeCache,
        client: ProviderClient,
        store: PositionStore,
        *,
        concurrency: int = 3,
        reuse_distance_meters: float = 25.0,
    ) -> None:
        self._queue = queue
        self._cache = cache
        self._client = client
        self._store = store
        self._concurrency = concurrency
        self._reuse_distance = reuse_distance_meters
        self._stop: StopProcessor | None = None
        self.processed: dict[str, int] = {}

    @property
    def running(self) -> bool:
        return self._stop is not None

    async def start(self) -> None:
        """Register the job processor with the queue."""
        if self._stop is not None:
            return
        self._stop = await self._queue.register_processor(self.handle_job, self._concurrency)
        logger.info(f"Geocode worker pool started (concurrency={self._concurrency}, driver={self._queue.driver})")

    async def stop(self) -> None:
        if self._stop is None:
            return
        stop, self._stop = self._stop, None
        await stop()
        logger.info("Geocode worker pool stopped")

    async def handle_job(self, job: JobHandle) -> JobResult:
        """Resolve one job.

        Raises:
            Exception: Provider failures propagate so the queue applies
                its backoff. On the final attempt every position is marked
                FAILED first.
        """
        data = job.data
        ids = list(data.position_ids)
        provider = self._client.provider_name

        await self._best_effort(self._store.mark_pending(ids, provider), f"mark PENDING for {data.grid_key}")

        cached = self._cache.get(data.grid_key)
        if cached is not None:
            ids = await self._current_ids(job)
            job.processed_ids = ids
            written = await self._write_addresses(ids, cached.formatted_address, cached.provider)
            await self._cache.increment_hit(data.grid_key)
            return self._done("cached", data.grid_key, cached.formatted_address, cached.provider, ids, written)

        reused = await self._reuse_device_address(job)
        if reused is not None:
            address, reused_provider = reused
            ids = await self._current_ids(job)
            job.processed_ids = ids
            written = await self._write_addresses(ids, address, reused_provider)
            return self._done("reuse_distance", data.grid_key, address, reused_provider, ids, written)

        try:
            result = await self._client.resolve(data.lat, data.lng)
        except CoordinateValidationError as e:
            ids = await self._current_ids(job)
            job.processed_ids = ids
            await self._best_effort(self._store.mark_failed(ids, str(e), provider), f"mark FAILED for {data.grid_key}")
            return self._done("invalid", data.grid_key, None, provider, ids, 0)
        except Exception as e:
            if job.is_last_attempt:
                await self._exhaust(job, e)
            raise

        address = result.formatted_address
        try:
            entry = await self._cache.set(data.grid_key, data.lat, data.lng, result, provider)
            address = entry.formatted_address
        except Exception as e:
            logger.warning(f"Failed to persist geocode cache entry {data.grid_key}: {e}")

        ids = await self._current_ids(job)
        job.processed_ids = ids
        written = await self._write_addresses(ids, address, provider)
        return self._done("resolved", data.grid_key, address, provider, ids, written)

    async def _reuse_device_address(self, job: JobHandle) -> tuple[str, str | None] | None:
        data = job.data
        if data.device_id is None or self._reuse_distance <= 0:
            return None
        try:
            latest = await self._store.fetch_latest_resolved_for_device(data.device_id)
        except Exception as e:
            logger.warning(f"Failed to load last resolved position for device {data.device_id}: {e}")
            return None
        if latest is None or not latest.full_address:
            return None
        distance = haversine_meters(data.lat, data.lng, latest.latitude, latest.longitude)
        if distance > self._reuse_distance:
            return None
        logger.debug(f"Reusing address of position {latest.id} ({distance:.1f} m away) for {data.grid_key}")
        return latest.full_address, latest.address_provider

    async def _current_ids(self, job: JobHandle) -> list[str]:
        """Ids on the job now, including any merged while the lookup ran."""
        try:
            current = await self._queue.get_job(job.id)
        except Exception as e:
            logger.warning(f"Failed to re-read job {job.id}: {e}")
            current = None
        if current is None:
            return list(job.data.position_ids)
        return merge_position_ids(job.data.position_ids, current.data.position_ids)

    async def _write_addresses(self, ids: list[str], address: str | None, provider: str | None) -> int:
        """Write the address to each id independently; returns successful writes."""
        if not address or not ids:
            return 0
        results = await asyncio.gather(
            *(self._store.update_full_address(position_id, address, provider) for position_id in ids),
            return_exceptions=True,
        )
        written = 0
        for position_id, outcome in zip(ids, results, strict=True):
            if isinstance(outcome, BaseException):
                logger.warning(f"Failed to write address for position {position_id}: {outcome}")
            elif outcome:
                written += 1
        return written

    async def _exhaust(self, job: JobHandle, error: Exception) -> None:
        ids = await self._current_ids(job)
        job.processed_ids = ids
        await self._best_effort(
            self._store.mark_failed(ids, str(error), self._client.provider_name),
            f"mark FAILED for {job.data.grid_key}",
        )
        exhausted = ExhaustedRetriesError(
            job.data.grid_key,
            job.data.device_id,
            ids,
            attempts=job.attempts_made + 1,
            cause=error,
        )
        self.processed["failed"] = self.processed.get("failed", 0) + 1
        logger.bind(
            json_output=True,
            event="geocode_failed",
            grid_key=exhausted.grid_key,
            device_id=exhausted.device_id,
            position_ids=exhausted.position_ids,
            attempts=exhausted.attempts,
        ).error(str(exhausted))

    def _done(
        self,
        status: str,
        grid_key: str,
        address: str | None,
        provider: str | None,
        ids: list[str],
        written: int,
    ) -> JobResult:
        self.processed[status] = self.processed.get(status, 0) + 1
        logger.bind(
            json_output=True,
            event=_OUTCOME_EVENTS.get(status, f"geocode_{status}"),
            grid_key=grid_key,
            provider=provider,
            position_count=len(ids),
            written=written,
        ).info(f"Geocode job {grid_key} {status}: {written}/{len(ids)} position(s) updated")
        return JobResult(
            status=status,
            grid_key=grid_key,
            address=address,
            provider=provider,
            position_ids=ids,
            written=written,
        )

    @staticmethod
    async def _best_effort(operation: Awaitable[object], description: str) -> None:
        try:
            await operation
        except Exception as e:
            logger.warning(f"Failed to {description}: {e}")

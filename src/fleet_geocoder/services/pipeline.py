"""Geocode pipeline: owns every component for one process.

Startup order: hydrate the cache, pick a queue backend, build the provider
client, then start the worker pool and the monitor loops. Shutdown runs in
reverse.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from fleet_geocoder.lib.geocoder import GeocodeCache, ProviderClient, create_provider_client
from fleet_geocoder.lib.job_queue import (
    BackoffSchedule,
    JobHandle,
    JobReason,
    Priority,
    QueueBackend,
    create_queue_backend,
)
from fleet_geocoder.services.enqueuer import GeocodeEnqueuer
from fleet_geocoder.services.monitor import GeocodeMonitor, MonitorConfig
from fleet_geocoder.services.position_store import PositionStore, SqlPositionStore
from fleet_geocoder.services.worker import GeocodeWorkerPool

if TYPE_CHECKING:
    import httpx
    import redis.asyncio as aioredis
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from fleet_geocoder.core.config import Settings


class GeocodePipeline:
    """Reverse-geocoding pipeline for one process.

    Args:
        settings: Application settings.
        session_factory: Async session factory; defaults to the global one
            from :mod:`fleet_geocoder.core.database`.
        redis_client: Optional pre-built Redis client.
        http_client: Optional HTTP client for provider calls.
        position_store: Optional store; defaults to :class:`SqlPositionStore`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        redis_client: aioredis.Redis | None = None,
        http_client: httpx.AsyncClient | None = None,
        position_store: PositionStore | None = None,
    ) -> None:
        self._settings = settings
        self._session_factory = session_factory
        self._redis_client = redis_client
        self._http_client = http_client
        self._position_store = position_store
        self._queue: QueueBackend | None = None
        self._cache: GeocodeCache | None = None
        self._client: ProviderClient | None = None
        self._enqueuer: GeocodeEnqueuer | None = None
        self._worker: GeocodeWorkerPool | None = None
        self._monitor: GeocodeMonitor | None = None

    @property
    def initialized(self) -> bool:
        return self._queue is not None

    @property
    def queue(self) -> QueueBackend:
        return self._require(self._queue)

    @property
    def cache(self) -> GeocodeCache:
        return self._require(self._cache)

    @property
    def client(self) -> ProviderClient:
        return self._require(self._client)

    @property
    def enqueuer(self) -> GeocodeEnqueuer:
        return self._require(self._enqueuer)

    @property
    def worker(self) -> GeocodeWorkerPool:
        return self._require(self._worker)

    @property
    def monitor(self) -> GeocodeMonitor:
        return self._require(self._monitor)

    @property
    def store(self) -> PositionStore:
        return self._require(self._position_store)

    @staticmethod
    def _require(component: Any) -> Any:
        if component is None:
            msg = "Geocode pipeline not initialized. Call init() first."
            raise RuntimeError(msg)
        return component

    async def init(self, *, start_workers: bool = True, start_monitor: bool = True) -> None:
        """Build every component and optionally start the background work.

        Args:
            start_workers: Register the worker pool with the queue.
            start_monitor: Start the scan and retry loops.
        """
        if self.initialized:
            return
        settings = self._settings
        if self._session_factory is None:
            from fleet_geocoder.core.database import get_session_factory

            self._session_factory = get_session_factory()

        self._cache = GeocodeCache(self._session_factory, precision=settings.geocode_grid_precision)
        await self._cache.hydrate()

        self._queue = await create_queue_backend(settings, redis_client=self._redis_client)
        self._client = create_provider_client(settings, http_client=self._http_client)
        if self._position_store is None:
            self._position_store = SqlPositionStore(self._session_factory)

        self._enqueuer = GeocodeEnqueuer(
            self._queue,
            precision=settings.geocode_grid_precision,
            backoff=BackoffSchedule.from_settings(settings),
            max_attempts=settings.geocode_max_attempts,
        )
        self._worker = GeocodeWorkerPool(
            self._queue,
            self._cache,
            self._client,
            self._position_store,
            concurrency=settings.geocode_worker_concurrency,
            reuse_distance_meters=settings.geocode_reuse_distance_meters,
        )
        self._monitor = GeocodeMonitor(
            self._position_store,
            self._enqueuer,
            MonitorConfig.from_settings(settings),
            provider=self._client.provider_name,
        )

        if start_workers:
            await self._worker.start()
        if start_monitor:
            self._monitor.start()
        logger.info(
            f"Geocode pipeline ready (provider={self._client.provider_name}, queue={self._queue.driver}, "
            f"cache_entries={len(self._cache)})"
        )

    async def shutdown(self) -> None:
        """Stop loops and workers, then close the queue and HTTP client."""
        if self._monitor is not None:
            await self._monitor.stop()
        if self._worker is not None:
            await self._worker.stop()
        if self._queue is not None:
            await self._queue.close()
        if self._client is not None:
            await self._client.aclose()
        self._queue = None
        self._monitor = None
        self._worker = None
        self._enqueuer = None
        self._client = None
        logger.info("Geocode pipeline shut down")

    async def enqueue(
        self,
        lat: float,
        lng: float,
        position_id: str | int | None = None,
        position_ids: list[str | int] | None = None,
        device_id: int | str | None = None,
        reason: str = JobReason.MANUAL,
        priority: str = Priority.NORMAL,
        delay_ms: int = 0,
    ) -> JobHandle | None:
        """Submit positions for geocoding; never raises."""
        if self._enqueuer is None:
            logger.warning("Geocode pipeline not initialized; dropping enqueue request")
            return None
        return await self._enqueuer.enqueue(
            lat,
            lng,
            position_id=position_id,
            position_ids=position_ids or (),
            device_id=device_id,
            reason=reason,
            priority=priority,
            delay_ms=delay_ms,
        )

    async def status(self) -> dict[str, Any]:
        """Snapshot of queue, cache, provider, worker, and monitor state."""
        if not self.initialized:
            return {"initialized": False}
        return {
            "initialized": True,
            "queue": await self.queue.stats(),
            "cache": self.cache.stats(),
            "provider": self.client.status(),
            "worker": {"running": self.worker.running, "processed": dict(self.worker.processed)},
            "monitor": {
                "running": self.monitor.running,
                "last_scan": _scan_dict(self.monitor.last_scan),
                "last_retry": _scan_dict(self.monitor.last_retry),
            },
        }


def _scan_dict(result: Any) -> dict[str, int] | None:
    if result is None:
        return None
    return {"scanned": result.scanned, "queued": result.queued}

"""Geocode monitor: periodic sweeps that keep positions flowing into the queue.

Two loops run side by side:

- scan: positions never submitted (NULL status) or stuck in PENDING, at
  normal priority.
- retry: positions that exhausted their attempts (FAILED), at high
  priority, much less often.

Each loop runs once immediately on start and then on its interval. Rows
without usable coordinates are skipped and keep their status.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from loguru import logger

from fleet_geocoder.lib.geocoder.grid import is_geocodable
from fleet_geocoder.lib.job_queue import JobReason, Priority
from fleet_geocoder.models.position import AddressStatus
from fleet_geocoder.services.enqueuer import GeocodeEnqueuer
from fleet_geocoder.services.position_store import PositionRecord, PositionStore

if TYPE_CHECKING:
    from fleet_geocoder.core.config import Settings


@dataclass
class ScanResult:
    """Outcome of one sweep."""

    scanned: int
    queued: int


@dataclass
class MonitorConfig:
    """Intervals, windows, and batch size for the monitor loops."""

    scan_interval_seconds: float = 60.0
    scan_lookback_minutes: int = 120
    scan_batch_size: int = 500
    pending_backoff_minutes: int = 2
    retry_interval_seconds: float = 6 * 60 * 60
    retry_lookback_minutes: int = 24 * 60
    failed_backoff_minutes: int = 60

    @classmethod
    def from_settings(cls, settings: "Settings") -> "MonitorConfig":
        return cls(
            scan_interval_seconds=settings.geocode_scan_interval_ms / 1000,
            scan_lookback_minutes=settings.geocode_scan_lookback_minutes,
            scan_batch_size=settings.geocode_scan_batch,
            pending_backoff_minutes=settings.geocode_pending_backoff_minutes,
            retry_interval_seconds=settings.geocode_retry_interval_ms / 1000,
            retry_lookback_minutes=settings.geocode_retry_lookback_minutes,
            failed_backoff_minutes=settings.geocode_retry_backoff_minutes,
        )


class GeocodeMonitor:
    """Find positions without an address and enqueue them.

    Args:
        store: Position store to sweep.
        enqueuer: Enqueuer that coalesces the positions into jobs.
        config: Loop intervals and windows.
        provider: Provider name recorded when marking PENDING.
    """

    def __init__(
        self,
        store: PositionStore,
        enqueuer: GeocodeEnqueuer,
        config: MonitorConfig | None = None,
        provider: str | None = None,
    ) -> None:
        self._store = store
        self._enqueuer = enqueuer
        self._config = config or MonitorConfig()
        self._provider = provider
        self._tasks: list[asyncio.Task[None]] = []
        self.last_scan: ScanResult | None = None
        self.last_retry: ScanResult | None = None

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def scan_once(self) -> ScanResult:
        """Enqueue NULL and stale PENDING positions within the lookback window."""
        cfg = self._config
        result = await self._sweep(
            statuses=[AddressStatus.PENDING],
            include_null=True,
            lookback_minutes=cfg.scan_lookback_minutes,
            backoff_minutes=cfg.pending_backoff_minutes,
            reason=JobReason.AUTO_SCAN,
            priority=Priority.NORMAL,
        )
        self.last_scan = result
        return result

    async def retry_once(self) -> ScanResult:
        """Re-enqueue FAILED positions whose backoff window has passed."""
        cfg = self._config
        result = await self._sweep(
            statuses=[AddressStatus.FAILED],
            include_null=False,
            lookback_minutes=cfg.retry_lookback_minutes,
            backoff_minutes=cfg.failed_backoff_minutes,
            reason=JobReason.RETRY_FAILED,
            priority=Priority.HIGH,
        )
        self.last_retry = result
        return result

    async def _sweep(
        self,
        statuses: Sequence[str],
        include_null: bool,
        lookback_minutes: int,
        backoff_minutes: int,
        reason: str,
        priority: str,
    ) -> ScanResult:
        stale_before = datetime.now(UTC) - timedelta(minutes=backoff_minutes)
        rows = await self._store.fetch_missing_addresses(
            statuses,
            include_null,
            lookback_minutes,
            self._config.scan_batch_size,
            stale_before=stale_before,
        )
        candidates = [
            row
            for row in rows
            if is_geocodable(row.latitude, row.longitude) and not _inside_backoff(row, stale_before)
        ]
        if not candidates:
            return ScanResult(scanned=len(rows), queued=0)

        try:
            await self._store.mark_pending([row.id for row in candidates], self._provider)
        except Exception as e:
            logger.warning(f"Failed to mark {len(candidates)} position(s) PENDING: {e}")

        queued = await self._enqueuer.enqueue_positions(candidates, reason=reason, priority=priority)
        logger.info(f"Geocode {reason} sweep: scanned={len(rows)} queued={queued}")
        return ScanResult(scanned=len(rows), queued=queued)

    def start(self) -> None:
        """Start both loops. An interval of 0 disables that loop."""
        if self._tasks:
            return
        cfg = self._config
        if cfg.scan_interval_seconds > 0:
            self._tasks.append(
                asyncio.create_task(self._loop("scan", self.scan_once, cfg.scan_interval_seconds), name="geocode-scan")
            )
        if cfg.retry_interval_seconds > 0:
            self._tasks.append(
                asyncio.create_task(
                    self._loop("retry", self.retry_once, cfg.retry_interval_seconds), name="geocode-retry"
                )
            )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def _loop(self, name: str, sweep: Callable[[], Awaitable[ScanResult]], interval: float) -> None:
        logger.info(f"Geocode {name} loop started (interval={interval}s)")
        while True:
            try:
                await sweep()
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                logger.info(f"Geocode {name} loop cancelled")
                break
            except Exception:
                logger.exception(f"Geocode {name} loop error")
                await asyncio.sleep(interval)


def _inside_backoff(row: PositionRecord, stale_before: datetime) -> bool:
    return row.address_updated_at is not None and row.address_updated_at >= stale_before

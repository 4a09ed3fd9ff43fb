"""Unit tests for the geocode monitor sweeps and loops."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_geocoder.core.config import Settings
from fleet_geocoder.lib.job_queue import BackoffSchedule, JobReason, MemoryQueueBackend, Priority
from fleet_geocoder.models.position import AddressStatus
from fleet_geocoder.services.enqueuer import GeocodeEnqueuer, job_id_for
from fleet_geocoder.services.monitor import GeocodeMonitor, MonitorConfig
from fleet_geocoder.services.position_store import SqlPositionStore
from tests.conftest import SAO_PAULO_KEY, InMemoryPositionStore, wait_until

# --- Helpers ---


@pytest.fixture
def queue() -> MemoryQueueBackend:
    return MemoryQueueBackend()


@pytest.fixture
def enqueuer(queue: MemoryQueueBackend) -> GeocodeEnqueuer:
    return GeocodeEnqueuer(queue, backoff=BackoffSchedule((10, 20)))


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> SqlPositionStore:
    return SqlPositionStore(session_factory)


@pytest.fixture
def monitor(store: SqlPositionStore, enqueuer: GeocodeEnqueuer) -> GeocodeMonitor:
    return GeocodeMonitor(store, enqueuer, MonitorConfig(), provider="nominatim")


class FlakyStore(InMemoryPositionStore):
    """Store whose first ``failures`` fetches raise."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.fetches = 0

    async def fetch_missing_addresses(self, *args: Any, **kwargs: Any) -> list:
        self.fetches += 1
        if self.fetches <= self.failures:
            msg = "database went away"
            raise RuntimeError(msg)
        return await super().fetch_missing_addresses(*args, **kwargs)


class TestMonitorConfig:
    """Tests for building the config from settings."""

    def test_from_settings(self, settings: Settings) -> None:
        config = MonitorConfig.from_settings(settings)
        assert config.scan_interval_seconds == 60.0
        assert config.scan_lookback_minutes == 120
        assert config.scan_batch_size == 500
        assert config.retry_interval_seconds == 6 * 60 * 60
        assert config.failed_backoff_minutes == 60


class TestScanOnce:
    """Tests for the unresolved-position sweep."""

    async def test_enqueues_never_submitted_positions(
        self,
        monitor: GeocodeMonitor,
        queue: MemoryQueueBackend,
        store: SqlPositionStore,
        make_position: Callable[..., Any],
    ) -> None:
        first = await make_position()
        second = await make_position()

        result = await monitor.scan_once()

        assert (result.scanned, result.queued) == (2, 2)
        job = await queue.get_job(job_id_for(SAO_PAULO_KEY))
        assert job is not None
        assert job.data.position_ids == [str(first), str(second)]
        assert job.data.reason == JobReason.AUTO_SCAN
        assert job.options.priority == Priority.NORMAL
        rows = await store.fetch_missing_addresses([AddressStatus.PENDING], False, 120, 10)
        assert {row.id for row in rows} == {first, second}
        assert monitor.last_scan == result

    async def test_skips_recently_touched_pending(
        self,
        monitor: GeocodeMonitor,
        queue: MemoryQueueBackend,
        make_position: Callable[..., Any],
    ) -> None:
        now = datetime.now(UTC)
        await make_position(address_status=AddressStatus.PENDING, address_updated_at=now - timedelta(seconds=30))
        stale = await make_position(
            address_status=AddressStatus.PENDING, address_updated_at=now - timedelta(minutes=10)
        )

        result = await monitor.scan_once()

        assert (result.scanned, result.queued) == (1, 1)
        job = await queue.get_job(job_id_for(SAO_PAULO_KEY))
        assert job is not None
        assert job.data.position_ids == [str(stale)]

    async def test_ignores_positions_outside_lookback(
        self,
        monitor: GeocodeMonitor,
        make_position: Callable[..., Any],
    ) -> None:
        await make_position(fix_time=datetime.now(UTC) - timedelta(hours=5))

        result = await monitor.scan_once()

        assert (result.scanned, result.queued) == (0, 0)

    async def test_ignores_resolved_and_failed(
        self,
        monitor: GeocodeMonitor,
        make_position: Callable[..., Any],
    ) -> None:
        long_ago = datetime.now(UTC) - timedelta(hours=3)
        await make_position(address_status=AddressStatus.RESOLVED, full_address="Rua A, 1")
        await make_position(address_status=AddressStatus.FAILED, address_updated_at=long_ago)

        result = await monitor.scan_once()

        assert result.queued == 0

    async def test_null_island_keeps_its_status(
        self,
        monitor: GeocodeMonitor,
        queue: MemoryQueueBackend,
        store: SqlPositionStore,
        make_position: Callable[..., Any],
    ) -> None:
        placeholder = await make_position(0.0, 0.0)
        valid = await make_position()

        result = await monitor.scan_once()

        assert (result.scanned, result.queued) == (2, 1)
        pending = await store.fetch_missing_addresses([AddressStatus.PENDING], False, 120, 10)
        assert [row.id for row in pending] == [valid]
        never = await store.fetch_missing_addresses([], True, 120, 10)
        assert [row.id for row in never] == [placeholder]
        assert (await queue.stats())["waiting"] == 1

    async def test_batch_size_limits_selection(
        self,
        store: SqlPositionStore,
        enqueuer: GeocodeEnqueuer,
        make_position: Callable[..., Any],
    ) -> None:
        for _ in range(3):
            await make_position()
        monitor = GeocodeMonitor(store, enqueuer, MonitorConfig(scan_batch_size=2))

        result = await monitor.scan_once()

        assert result.scanned == 2


class TestRetryOnce:
    """Tests for the FAILED-position sweep."""

    async def test_requeues_failed_after_backoff(
        self,
        monitor: GeocodeMonitor,
        queue: MemoryQueueBackend,
        make_position: Callable[..., Any],
    ) -> None:
        now = datetime.now(UTC)
        old = await make_position(address_status=AddressStatus.FAILED, address_updated_at=now - timedelta(hours=2))
        await make_position(address_status=AddressStatus.FAILED, address_updated_at=now - timedelta(minutes=5))

        result = await monitor.retry_once()

        assert (result.scanned, result.queued) == (1, 1)
        job = await queue.get_job(job_id_for(SAO_PAULO_KEY))
        assert job is not None
        assert job.data.position_ids == [str(old)]
        assert job.data.reason == JobReason.RETRY_FAILED
        assert job.options.priority == Priority.HIGH
        assert monitor.last_retry == result

    async def test_ignores_never_submitted(
        self,
        monitor: GeocodeMonitor,
        make_position: Callable[..., Any],
    ) -> None:
        await make_position()
        result = await monitor.retry_once()
        assert result.queued == 0


class TestMonitorLoops:
    """Tests for the background loops."""

    async def test_start_runs_scan_immediately_and_stop(
        self,
        store: SqlPositionStore,
        enqueuer: GeocodeEnqueuer,
        make_position: Callable[..., Any],
    ) -> None:
        await make_position()
        monitor = GeocodeMonitor(
            store,
            enqueuer,
            MonitorConfig(scan_interval_seconds=60, retry_interval_seconds=0),
        )

        monitor.start()
        assert monitor.running is True
        await wait_until(lambda: monitor.last_scan is not None)
        assert monitor.last_scan.queued == 1
        assert monitor.last_retry is None

        await monitor.stop()
        assert monitor.running is False

    async def test_zero_intervals_start_nothing(self, monitor: GeocodeMonitor) -> None:
        quiet = GeocodeMonitor(
            monitor._store,
            monitor._enqueuer,
            MonitorConfig(scan_interval_seconds=0, retry_interval_seconds=0),
        )
        quiet.start()
        assert quiet.running is False

    async def test_loop_survives_sweep_errors(self, enqueuer: GeocodeEnqueuer) -> None:
        store = FlakyStore(failures=2)
        monitor = GeocodeMonitor(
            store,
            enqueuer,
            MonitorConfig(scan_interval_seconds=0.01, retry_interval_seconds=0),
        )

        monitor.start()
        await wait_until(lambda: monitor.last_scan is not None)
        await monitor.stop()

        assert store.fetches >= 3

"""Unit tests for the historical address backfill."""

from datetime import UTC, datetime, timedelta

import pytest

from fleet_geocoder.lib.job_queue import BackoffSchedule, JobReason, MemoryQueueBackend
from fleet_geocoder.models.position import AddressStatus
from fleet_geocoder.services.backfill import GeocodeBackfill
from fleet_geocoder.services.enqueuer import GeocodeEnqueuer, job_id_for
from fleet_geocoder.services.position_store import PositionRecord
from tests.conftest import SAO_PAULO_KEY, SAO_PAULO_LAT, SAO_PAULO_LNG, InMemoryPositionStore

BASE_TIME = datetime(2025, 3, 1, tzinfo=UTC)


@pytest.fixture
def queue() -> MemoryQueueBackend:
    return MemoryQueueBackend()


@pytest.fixture
def enqueuer(queue: MemoryQueueBackend) -> GeocodeEnqueuer:
    return GeocodeEnqueuer(queue, backoff=BackoffSchedule((10, 20)))


def _seed(store: InMemoryPositionStore, count: int, **overrides: object) -> list[int]:
    ids = []
    for offset in range(count):
        position_id = len(store.positions) + 1
        fields: dict = {
            "id": position_id,
            "device_id": 7,
            "latitude": SAO_PAULO_LAT,
            "longitude": SAO_PAULO_LNG,
            "fix_time": BASE_TIME + timedelta(hours=offset),
        }
        fields.update(overrides)
        store.add(PositionRecord(**fields))
        ids.append(position_id)
    return ids


class TestGeocodeBackfill:
    """Tests for paging, limits, and dry runs."""

    async def test_pages_through_range(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
        queue: MemoryQueueBackend,
    ) -> None:
        ids = _seed(position_store, 5)
        backfill = GeocodeBackfill(position_store, enqueuer, batch_size=2, provider="nominatim")

        result = await backfill.run()

        assert (result.processed, result.queued, result.skipped) == (5, 5, 0)
        assert result.last_id == ids[-1]
        assert result.remaining == 995
        job = await queue.get_job(job_id_for(SAO_PAULO_KEY))
        assert job is not None
        assert job.data.position_ids == [str(i) for i in ids]
        assert job.data.reason == JobReason.BACKFILL
        assert {position_store.status_of(i) for i in ids} == {AddressStatus.PENDING}

    async def test_max_stops_early_and_resumes(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
    ) -> None:
        ids = _seed(position_store, 5)
        backfill = GeocodeBackfill(position_store, enqueuer, batch_size=2)

        first = await backfill.run(max_positions=3)
        assert (first.processed, first.last_id, first.remaining) == (3, ids[2], 0)

        second = await backfill.run(after_id=first.last_id)
        assert second.processed == 2
        assert second.last_id == ids[-1]

    async def test_fix_time_range(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
    ) -> None:
        ids = _seed(position_store, 4)
        backfill = GeocodeBackfill(position_store, enqueuer)

        result = await backfill.run(fix_from=BASE_TIME + timedelta(hours=1), fix_to=BASE_TIME + timedelta(hours=2))

        assert result.processed == 2
        assert result.last_id == ids[2]

    async def test_skips_resolved_and_placeholder_coordinates(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
    ) -> None:
        _seed(position_store, 1, full_address="Rua A, 1", address_status=AddressStatus.RESOLVED)
        (placeholder,) = _seed(position_store, 1, latitude=0.0, longitude=0.0)
        (valid,) = _seed(position_store, 1)
        backfill = GeocodeBackfill(position_store, enqueuer)

        result = await backfill.run()

        assert (result.processed, result.queued, result.skipped) == (2, 1, 1)
        assert position_store.status_of(placeholder) is None
        assert position_store.status_of(valid) == AddressStatus.PENDING

    async def test_dry_run_leaves_queue_and_rows_untouched(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
        queue: MemoryQueueBackend,
    ) -> None:
        ids = _seed(position_store, 3)
        backfill = GeocodeBackfill(position_store, enqueuer)

        result = await backfill.run(dry_run=True)

        assert result.dry_run is True
        assert (result.processed, result.queued) == (3, 3)
        assert await queue.get_job(job_id_for(SAO_PAULO_KEY)) is None
        assert all(position_store.status_of(i) is None for i in ids)

    async def test_rejects_bad_arguments(
        self,
        position_store: InMemoryPositionStore,
        enqueuer: GeocodeEnqueuer,
    ) -> None:
        with pytest.raises(ValueError, match="batch_size"):
            GeocodeBackfill(position_store, enqueuer, batch_size=0)
        backfill = GeocodeBackfill(position_store, enqueuer)
        with pytest.raises(ValueError, match="max_positions"):
            await backfill.run(max_positions=0)
        with pytest.raises(ValueError, match="inverted"):
            await backfill.run(fix_from=BASE_TIME, fix_to=BASE_TIME - timedelta(days=1))

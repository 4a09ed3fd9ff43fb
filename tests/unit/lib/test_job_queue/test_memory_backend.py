"""Tests for the in-process queue backend."""

import asyncio

from fleet_geocoder.lib.job_queue.backoff import BackoffSchedule
from fleet_geocoder.lib.job_queue.base import GeocodeJobData, JobHandle, JobOptions, JobState, Priority
from fleet_geocoder.lib.job_queue.memory import MemoryQueueBackend
from tests.conftest import wait_until

FAST_BACKOFF = BackoffSchedule((10, 20))


def _payload(key: str = "1,2", ids: list[str] | None = None) -> GeocodeJobData:
    return GeocodeJobData(grid_key=key, lat=1.0, lng=2.0, position_ids=ids or ["1"])


def _options(**kwargs: object) -> JobOptions:
    return JobOptions(backoff=FAST_BACKOFF, **kwargs)  # type: ignore[arg-type]


class TestMemoryQueueAdd:
    """Tests for adding and updating jobs."""

    async def test_add_returns_waiting_handle(self) -> None:
        queue = MemoryQueueBackend()
        handle = await queue.add("job-1", _payload(), _options())

        assert handle.id == "job-1"
        assert handle.state == JobState.WAITING
        assert await queue.get_job("job-1") is handle

    async def test_add_generates_id(self) -> None:
        handle = await MemoryQueueBackend().add(None, _payload(), _options())
        assert handle.id

    async def test_add_existing_id_returns_existing(self) -> None:
        queue = MemoryQueueBackend()
        first = await queue.add("job-1", _payload(ids=["1"]), _options())
        second = await queue.add("job-1", _payload(ids=["2"]), _options())

        assert second is first
        assert second.data.position_ids == ["1"]

    async def test_update_unions_position_ids(self) -> None:
        queue = MemoryQueueBackend()
        handle = await queue.add("job-1", _payload(ids=["1"]), _options())
        await queue.update(handle, {"position_ids": ["2"]})
        await queue.update(handle, {"position_ids": ["1", "3"]})

        job = await queue.get_job("job-1")
        assert job is not None
        assert job.data.position_ids == ["1", "2", "3"]

    async def test_update_of_finished_job_recreates_it(self) -> None:
        queue = MemoryQueueBackend()
        handle = await queue.add("job-1", _payload(ids=["1"]), _options())
        queue._jobs.pop("job-1")

        recreated = await queue.update(handle, {"position_ids": ["2"]})

        assert await queue.get_job("job-1") is recreated
        assert recreated.data.position_ids == ["2"]
        assert recreated.state == JobState.WAITING

    async def test_delayed_job(self) -> None:
        queue = MemoryQueueBackend()
        handle = await queue.add("job-1", _payload(), _options(delay_ms=30))
        assert handle.state == JobState.DELAYED

        seen: list[str] = []

        async def processor(job: JobHandle) -> None:
            seen.append(job.id)

        stop = await queue.register_processor(processor)
        await wait_until(lambda: seen == ["job-1"])
        await stop()


class TestMemoryQueueProcessing:
    """Tests for consumption, retries, and exhaustion."""

    async def test_success_removes_job(self) -> None:
        queue = MemoryQueueBackend()
        done = asyncio.Event()

        async def processor(job: JobHandle) -> None:
            done.set()

        stop = await queue.register_processor(processor)
        await queue.add("job-1", _payload(), _options())
        await asyncio.wait_for(done.wait(), timeout=1)
        await wait_until(lambda: not queue._jobs)

        assert await queue.get_job("job-1") is None
        assert (await queue.stats())["completed"] == 1
        await stop()

    async def test_high_priority_dispatched_first(self) -> None:
        queue = MemoryQueueBackend()
        await queue.add("normal", _payload("1,1"), _options(priority=Priority.NORMAL))
        await queue.add("high", _payload("2,2"), _options(priority=Priority.HIGH))
        order: list[str] = []

        async def processor(job: JobHandle) -> None:
            order.append(job.id)

        stop = await queue.register_processor(processor, concurrency=1)
        await wait_until(lambda: len(order) == 2)
        assert order == ["high", "normal"]
        await stop()

    async def test_failed_attempt_is_retried_with_backoff(self) -> None:
        queue = MemoryQueueBackend()
        attempts_seen: list[int] = []

        async def processor(job: JobHandle) -> None:
            attempts_seen.append(job.attempts_made)
            if job.attempts_made == 0:
                raise RuntimeError("provider down")

        stop = await queue.register_processor(processor)
        await queue.add("job-1", _payload(), _options())
        await wait_until(lambda: len(attempts_seen) == 2)
        await wait_until(lambda: not queue._jobs)

        assert attempts_seen == [0, 1]
        stats = await queue.stats()
        assert stats["completed"] == 1
        assert stats["failed"] == 0
        await stop()

    async def test_exhausted_job_is_dropped(self) -> None:
        queue = MemoryQueueBackend()
        calls = 0

        async def processor(job: JobHandle) -> None:
            nonlocal calls
            calls += 1
            raise RuntimeError("still down")

        stop = await queue.register_processor(processor)
        handle = await queue.add("job-1", _payload(), _options(attempts=2))
        await wait_until(lambda: handle.state == JobState.FAILED)

        assert calls == 2
        assert handle.attempts_made == 2
        assert handle.last_error == "still down"
        assert await queue.get_job("job-1") is None
        assert (await queue.stats())["failed"] == 1
        await stop()

    async def test_ids_merged_during_run_are_requeued(self) -> None:
        queue = MemoryQueueBackend()
        runs: list[list[str]] = []

        async def processor(job: JobHandle) -> None:
            runs.append(list(job.data.position_ids))
            job.processed_ids = list(job.data.position_ids)
            if len(runs) == 1:
                await queue.update(job, {"position_ids": ["2"]})

        stop = await queue.register_processor(processor)
        await queue.add("job-1", _payload(ids=["1"]), _options())
        await wait_until(lambda: len(runs) == 2 and not queue._jobs)

        assert runs == [["1"], ["2"]]
        assert (await queue.stats())["completed"] == 2
        await stop()

    async def test_exhausted_job_requeues_unreported_ids(self) -> None:
        queue = MemoryQueueBackend()
        runs: list[list[str]] = []

        async def processor(job: JobHandle) -> None:
            runs.append(list(job.data.position_ids))
            if len(runs) == 1:
                job.processed_ids = ["1"]
                await queue.update(job, {"position_ids": ["2"]})
                raise RuntimeError("still down")

        stop = await queue.register_processor(processor)
        await queue.add("job-1", _payload(ids=["1"]), _options(attempts=1))
        await wait_until(lambda: len(runs) == 2 and not queue._jobs)

        assert runs == [["1"], ["2"]]
        stats = await queue.stats()
        assert (stats["failed"], stats["completed"]) == (1, 1)
        await stop()

    async def test_same_id_can_be_added_after_completion(self) -> None:
        queue = MemoryQueueBackend()
        runs: list[list[str]] = []

        async def processor(job: JobHandle) -> None:
            runs.append(job.data.position_ids)

        stop = await queue.register_processor(processor)
        await queue.add("job-1", _payload(ids=["1"]), _options())
        await wait_until(lambda: len(runs) == 1 and not queue._jobs)
        await queue.add("job-1", _payload(ids=["2"]), _options())
        await wait_until(lambda: len(runs) == 2)

        assert runs == [["1"], ["2"]]
        await stop()

    async def test_stop_halts_consumption(self) -> None:
        queue = MemoryQueueBackend()
        seen: list[str] = []

        async def processor(job: JobHandle) -> None:
            seen.append(job.id)

        stop = await queue.register_processor(processor)
        await stop()
        await queue.add("job-1", _payload(), _options())
        await asyncio.sleep(0.05)

        assert seen == []
        assert (await queue.stats())["waiting"] == 1

    async def test_close_cancels_timers_and_workers(self) -> None:
        queue = MemoryQueueBackend()

        async def processor(job: JobHandle) -> None:
            return None

        await queue.register_processor(processor, concurrency=2)
        await queue.add("later", _payload(), _options(delay_ms=10_000))
        await queue.close()

        assert queue._workers == []
        assert queue._timers == {}
        assert (await queue.stats())["delayed"] == 1

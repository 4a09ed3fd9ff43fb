"""Historical backfill: queue positions that never received an address.

Unlike the monitor, the backfill ignores the lookback window and the address
status. It walks every position with an empty address inside an optional
fix-time range, in id order, and hands each batch to the enqueuer. The walk
is keyset-paginated on the id so a run can be resumed from ``last_id``.
"""

from dataclasses import dataclass
from datetime import datetime

from loguru import logger

from fleet_geocoder.lib.geocoder.grid import is_geocodable
from fleet_geocoder.lib.job_queue import JobReason, Priority
from fleet_geocoder.services.enqueuer import GeocodeEnqueuer
from fleet_geocoder.services.position_store import PositionRecord, PositionStore

DEFAULT_BACKFILL_BATCH = 500
DEFAULT_BACKFILL_MAX = 1000


@dataclass
class BackfillResult:
    """Outcome of one backfill run.

    ``processed`` counts every row read; ``queued`` the rows that landed in
    a job (or would have, on a dry run); ``skipped`` rows without usable
    coordinates or that the queue refused.
    """

    processed: int = 0
    queued: int = 0
    skipped: int = 0
    remaining: int = 0
    last_id: int | None = None
    dry_run: bool = False


class GeocodeBackfill:
    """Enqueue unresolved positions over a fix-time range.

    Args:
        store: Position store to read.
        enqueuer: Enqueuer that coalesces the positions into jobs.
        batch_size: Rows fetched per page.
        provider: Provider name recorded when marking PENDING.
    """

    def __init__(
        self,
        store: PositionStore,
        enqueuer: GeocodeEnqueuer,
        *,
        batch_size: int = DEFAULT_BACKFILL_BATCH,
        provider: str | None = None,
    ) -> None:
        if batch_size <= 0:
            msg = f"batch_size must be positive, got {batch_size}"
            raise ValueError(msg)
        self._store = store
        self._enqueuer = enqueuer
        self._batch_size = batch_size
        self._provider = provider

    async def run(
        self,
        fix_from: datetime | None = None,
        fix_to: datetime | None = None,
        max_positions: int = DEFAULT_BACKFILL_MAX,
        after_id: int | None = None,
        dry_run: bool = False,
        priority: str = Priority.NORMAL,
    ) -> BackfillResult:
        """Walk the range and enqueue each page.

        Args:
            fix_from: Inclusive lower bound on fix time.
            fix_to: Inclusive upper bound on fix time.
            max_positions: Stop after reading this many rows.
            after_id: Resume after this position id.
            dry_run: Count what would be queued without touching the queue
                or the rows.
            priority: Priority of the submitted jobs.

        Returns:
            Counters and the last id read.

        Raises:
            ValueError: If ``max_positions`` is not positive or the range is
                inverted.
        """
        if max_positions <= 0:
            msg = f"max_positions must be positive, got {max_positions}"
            raise ValueError(msg)
        if fix_from is not None and fix_to is not None and fix_from > fix_to:
            msg = f"Backfill range is inverted: {fix_from.isoformat()} > {fix_to.isoformat()}"
            raise ValueError(msg)

        result = BackfillResult(last_id=after_id, dry_run=dry_run)
        while result.processed < max_positions:
            limit = min(self._batch_size, max_positions - result.processed)
            rows = await self._store.fetch_unresolved_range(fix_from, fix_to, result.last_id, limit)
            if not rows:
                break

            candidates = [row for row in rows if is_geocodable(row.latitude, row.longitude)]
            if dry_run:
                queued = len(candidates)
            else:
                queued = await self._submit(candidates, priority)

            result.processed += len(rows)
            result.queued += queued
            result.skipped += len(rows) - queued
            result.last_id = rows[-1].id
            logger.info(
                f"Geocode backfill progress: processed={result.processed} queued={result.queued} "
                f"skipped={result.skipped} last_id={result.last_id} dry_run={dry_run}"
            )
            if len(rows) < limit:
                break

        result.remaining = max(0, max_positions - result.processed)
        logger.bind(
            json_output=True,
            event="geocode_backfill_done",
            processed=result.processed,
            queued=result.queued,
            skipped=result.skipped,
            last_id=result.last_id,
            dry_run=dry_run,
        ).info(f"Geocode backfill finished: {result.queued}/{result.processed} position(s) queued")
        return result

    async def _submit(self, candidates: list[PositionRecord], priority: str) -> int:
        if not candidates:
            return 0
        try:
            await self._store.mark_pending([row.id for row in candidates], self._provider)
        except Exception as e:
            logger.warning(f"Failed to mark {len(candidates)} position(s) PENDING: {e}")
        return await self._enqueuer.enqueue_positions(candidates, reason=JobReason.BACKFILL, priority=priority)

"""Position store: reads and writes the address columns of device positions.

The pipeline never owns the positions table; it only touches the address
columns through the :class:`PositionStore` protocol so tests and other
deployments can swap the storage.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from loguru import logger
from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_geocoder.models.position import AddressStatus, Position

ADDRESS_ERROR_MAX_LENGTH = 200


@dataclass
class PositionRecord:
    """The fields of a position the pipeline needs."""

    id: int
    device_id: int | None
    latitude: float
    longitude: float
    fix_time: datetime | None = None
    address_status: str | None = None
    address_updated_at: datetime | None = None
    full_address: str | None = None
    address_provider: str | None = None

    @classmethod
    def from_row(cls, row: Position) -> "PositionRecord":
        return cls(
            id=row.id,
            device_id=row.device_id,
            latitude=row.latitude,
            longitude=row.longitude,
            fix_time=as_utc(row.fix_time),
            address_status=row.address_status,
            address_updated_at=as_utc(row.address_updated_at),
            full_address=row.full_address,
            address_provider=row.address_provider,
        )


class PositionStore(Protocol):
    """Storage for position address state."""

    async def fetch_missing_addresses(
        self,
        statuses: Sequence[str],
        include_null: bool,
        lookback_minutes: int,
        limit: int,
        stale_before: datetime | None = None,
    ) -> list[PositionRecord]:
        """Select positions that still need an address.

        Args:
            statuses: Address statuses to include.
            include_null: Also include positions never submitted.
            lookback_minutes: Only positions fixed within this window.
            limit: Maximum rows, ordered by id.
            stale_before: Rows with a status must have been updated
                before this instant (backoff window).

        Returns:
            Matching positions.
        """
        ...

    async def fetch_unresolved_range(
        self,
        fix_from: datetime | None,
        fix_to: datetime | None,
        after_id: int | None,
        limit: int,
    ) -> list[PositionRecord]:
        """Select positions with an empty address, keyset-paginated by id.

        Args:
            fix_from: Inclusive lower bound on fix time, if any.
            fix_to: Inclusive upper bound on fix time, if any.
            after_id: Only ids strictly greater than this.
            limit: Maximum rows, ordered by id.

        Returns:
            Matching positions regardless of address status.
        """
        ...

    async def mark_pending(self, ids: Iterable[str | int], provider: str | None = None) -> int:
        """Set status PENDING on the given positions. Returns rows updated."""
        ...

    async def mark_failed(self, ids: Iterable[str | int], error: str, provider: str | None = None) -> int:
        """Set status FAILED and record a truncated error. Returns rows updated."""
        ...

    async def update_full_address(self, position_id: str | int, address: str, provider: str | None = None) -> bool:
        """Write a resolved address to one position. Returns whether it existed."""
        ...

    async def fetch_latest_resolved_for_device(self, device_id: int | str) -> PositionRecord | None:
        """Return the device's most recent RESOLVED position, if any."""
        ...


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def truncate_error(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:ADDRESS_ERROR_MAX_LENGTH]


def _to_int_ids(ids: Iterable[str | int]) -> list[int]:
    result: list[int] = []
    for value in ids:
        try:
            result.append(int(value))
        except (TypeError, ValueError):
            logger.warning(f"Ignoring non-numeric position id {value!r}")
    return result


class SqlPositionStore:
    """:class:`PositionStore` over the ``positions`` table.

    Args:
        session_factory: Async session factory; each call uses its own session.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def fetch_missing_addresses(
        self,
        statuses: Sequence[str],
        include_null: bool,
        lookback_minutes: int,
        limit: int,
        stale_before: datetime | None = None,
    ) -> list[PositionRecord]:
        since = datetime.now(UTC) - timedelta(minutes=lookback_minutes)

        status_filters = []
        if include_null:
            status_filters.append(Position.address_status.is_(None))
        if statuses:
            with_status = Position.address_status.in_([str(s) for s in statuses])
            if stale_before is not None:
                with_status = and_(
                    with_status,
                    or_(Position.address_updated_at.is_(None), Position.address_updated_at < stale_before),
                )
            status_filters.append(with_status)
        if not status_filters:
            return []

        stmt = (
            select(Position)
            .where(Position.fix_time >= since)
            .where(or_(*status_filters))
            .order_by(Position.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [PositionRecord.from_row(row) for row in result.scalars().all()]

    async def fetch_unresolved_range(
        self,
        fix_from: datetime | None,
        fix_to: datetime | None,
        after_id: int | None,
        limit: int,
    ) -> list[PositionRecord]:
        stmt = select(Position).where(or_(Position.full_address.is_(None), Position.full_address == ""))
        if fix_from is not None:
            stmt = stmt.where(Position.fix_time >= fix_from)
        if fix_to is not None:
            stmt = stmt.where(Position.fix_time <= fix_to)
        if after_id is not None:
            stmt = stmt.where(Position.id > after_id)
        stmt = stmt.order_by(Position.id).limit(limit)
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [PositionRecord.from_row(row) for row in result.scalars().all()]

    async def mark_pending(self, ids: Iterable[str | int], provider: str | None = None) -> int:
        return await self._set_status(ids, AddressStatus.PENDING, provider=provider)

    async def mark_failed(self, ids: Iterable[str | int], error: str, provider: str | None = None) -> int:
        return await self._set_status(ids, AddressStatus.FAILED, provider=provider, error=truncate_error(error))

    async def _set_status(
        self,
        ids: Iterable[str | int],
        status: AddressStatus,
        provider: str | None = None,
        error: str | None = None,
    ) -> int:
        int_ids = _to_int_ids(ids)
        if not int_ids:
            return 0
        values: dict[str, object] = {
            "address_status": str(status),
            "address_updated_at": datetime.now(UTC),
            "address_error": error,
        }
        if provider is not None:
            values["address_provider"] = provider
        async with self._session_factory() as session:
            result = await session.execute(update(Position).where(Position.id.in_(int_ids)).values(**values))
            await session.commit()
            return result.rowcount or 0

    async def update_full_address(self, position_id: str | int, address: str, provider: str | None = None) -> bool:
        int_ids = _to_int_ids([position_id])
        if not int_ids:
            return False
        async with self._session_factory() as session:
            result = await session.execute(
                update(Position)
                .where(Position.id == int_ids[0])
                .values(
                    full_address=address,
                    address_status=str(AddressStatus.RESOLVED),
                    address_provider=provider,
                    address_updated_at=datetime.now(UTC),
                    address_error=None,
                )
            )
            await session.commit()
            return bool(result.rowcount)

    async def fetch_latest_resolved_for_device(self, device_id: int | str) -> PositionRecord | None:
        try:
            device = int(device_id)
        except (TypeError, ValueError):
            return None
        stmt = (
            select(Position)
            .where(Position.device_id == device)
            .where(Position.address_status == str(AddressStatus.RESOLVED))
            .where(Position.full_address.is_not(None))
            .order_by(Position.fix_time.desc(), Position.id.desc())
            .limit(1)
        )
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return PositionRecord.from_row(row) if row is not None else None

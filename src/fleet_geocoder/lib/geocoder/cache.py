"""Write-through address cache keyed by grid cell.

The whole table is loaded into process memory at startup; reads never touch
the database. Every resolution updates memory and upserts the row.
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_geocoder.lib.geocoder.address import AddressParts
from fleet_geocoder.lib.geocoder.base import ReverseGeocodeResult
from fleet_geocoder.lib.geocoder.grid import DEFAULT_PRECISION, build_grid_key, normalize_coordinate
from fleet_geocoder.models.geocode_cache import GeocodeCacheEntry


@dataclass
class CachedAddress:
    """In-memory view of one cache row."""

    key: str
    latitude: float
    longitude: float
    formatted_address: str | None = None
    display_name: str | None = None
    parts: AddressParts = field(default_factory=AddressParts)
    provider: str | None = None
    raw_response: dict | list | None = None
    hits_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_address(self) -> bool:
        """Only entries carrying a resolved address count as cache hits."""
        return bool(self.formatted_address)

    @classmethod
    def from_row(cls, row: GeocodeCacheEntry) -> "CachedAddress":
        return cls(
            key=row.key,
            latitude=row.latitude,
            longitude=row.longitude,
            formatted_address=row.formatted_address,
            display_name=row.display_name,
            parts=AddressParts(
                street=row.street,
                house_number=row.house_number,
                neighbourhood=row.neighbourhood,
                city=row.city,
                state=row.state,
                postal_code=row.postal_code,
                country=row.country,
            ),
            provider=row.provider,
            raw_response=row.raw_response,
            hits_count=row.hits_count or 0,
            created_at=row.created_at,
            updated_at=row.updated_at,
        )

    def to_row_values(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "display_name": self.display_name,
            "formatted_address": self.formatted_address,
            "street": self.parts.street,
            "house_number": self.parts.house_number,
            "neighbourhood": self.parts.neighbourhood,
            "city": self.parts.city,
            "state": self.parts.state,
            "postal_code": self.parts.postal_code,
            "country": self.parts.country,
            "provider": self.provider,
            "raw_response": self.raw_response,
            "updated_at": self.updated_at,
        }


class GeocodeCache:
    """Process-wide address cache backed by the ``geocode_cache`` table.

    Args:
        session_factory: Async session factory for the durable store. When
            None the cache is memory-only (tests, disabled database).
        precision: Grid precision used by :meth:`get_for`.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        precision: int = DEFAULT_PRECISION,
    ) -> None:
        self._session_factory = session_factory
        self._precision = precision
        self._entries: dict[str, CachedAddress] = {}
        self._hydrated = False

    @property
    def hydrated(self) -> bool:
        return self._hydrated

    async def hydrate(self) -> int:
        """Load every persisted entry into memory.

        Failures are logged and leave the cache empty; the pipeline then
        simply sees misses.

        Returns:
            Number of entries loaded.
        """
        if self._session_factory is None:
            self._hydrated = True
            return 0
        try:
            async with self._session_factory() as session:
                result = await session.execute(select(GeocodeCacheEntry))
                rows = result.scalars().all()
        except Exception:
            logger.exception("Failed to hydrate geocode cache from the database")
            return 0

        for row in rows:
            self._entries[row.key] = CachedAddress.from_row(row)
        self._hydrated = True
        logger.info(f"Geocode cache hydrated with {len(rows)} entries")
        return len(rows)

    def get(self, grid_key: str | None) -> CachedAddress | None:
        """Return the entry for a grid key if it holds a usable address."""
        if not grid_key:
            return None
        entry = self._entries.get(grid_key)
        if entry is None or not entry.has_address:
            return None
        return entry

    def get_for(self, lat: float, lng: float) -> CachedAddress | None:
        """Look up by raw coordinates using the configured precision."""
        return self.get(build_grid_key(lat, lng, self._precision))

    async def set(
        self,
        grid_key: str,
        lat: float,
        lng: float,
        result: ReverseGeocodeResult,
        provider: str | None = None,
    ) -> CachedAddress:
        """Store a resolution in memory and upsert it durably.

        Args:
            grid_key: Cell key the result belongs to.
            lat: Rounded latitude of the cell.
            lng: Rounded longitude of the cell.
            result: Normalized provider result.
            provider: Provider name recorded with the entry.

        Returns:
            The stored entry.
        """
        now = datetime.now(UTC)
        previous = self._entries.get(grid_key)
        entry = CachedAddress(
            key=grid_key,
            latitude=_rounded(lat, self._precision),
            longitude=_rounded(lng, self._precision),
            formatted_address=result.formatted_address,
            display_name=result.display_name,
            parts=result.address_parts,
            provider=provider,
            raw_response=result.raw_response,
            hits_count=previous.hits_count if previous else 0,
            created_at=previous.created_at if previous and previous.created_at else now,
            updated_at=now,
        )
        self._entries[grid_key] = entry
        await self._upsert(entry)
        return entry

    async def _upsert(self, entry: CachedAddress) -> None:
        if self._session_factory is None:
            return
        async with self._session_factory() as session:
            row = await session.get(GeocodeCacheEntry, entry.key)
            values = entry.to_row_values()
            if row is None:
                session.add(GeocodeCacheEntry(**values, hits_count=entry.hits_count, created_at=entry.created_at))
            else:
                for name, value in values.items():
                    setattr(row, name, value)
            await session.commit()

    async def increment_hit(self, grid_key: str | None) -> None:
        """Count a cache hit. Best-effort: errors are logged, never raised."""
        if not grid_key:
            return
        entry = self._entries.get(grid_key)
        if entry is not None:
            entry.hits_count += 1
        if self._session_factory is None:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(
                    update(GeocodeCacheEntry)
                    .where(GeocodeCacheEntry.key == grid_key)
                    .values(hits_count=GeocodeCacheEntry.hits_count + 1)
                )
                await session.commit()
        except Exception as e:
            logger.warning(f"Failed to increment geocode cache hit for {grid_key}: {e}")

    def stats(self) -> dict[str, int]:
        """Entry count, resolved entry count, and total hits."""
        return {
            "entries": len(self._entries),
            "resolved_entries": sum(1 for e in self._entries.values() if e.has_address),
            "total_hits": sum(e.hits_count for e in self._entries.values()),
        }

    def __len__(self) -> int:
        return len(self._entries)


def _rounded(value: float, precision: int) -> float:
    normalized = normalize_coordinate(value, precision)
    return float(value) if normalized is None else normalized

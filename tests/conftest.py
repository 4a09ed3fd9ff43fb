"""Shared test fixtures for async database, sessions, position stores, and provider mocks."""

import asyncio
from collections.abc import AsyncGenerator, Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from fleet_geocoder.core.config import Settings
from fleet_geocoder.lib.geocoder.client import ProviderClient
from fleet_geocoder.lib.geocoder.limiter import LookupLimiter
from fleet_geocoder.lib.geocoder.nominatim import NominatimGeocoder
from fleet_geocoder.models.base import Base
from fleet_geocoder.models.position import AddressStatus, Position
from fleet_geocoder.services.position_store import PositionRecord

SAO_PAULO_LAT = -23.55052
SAO_PAULO_LNG = -46.633308
SAO_PAULO_KEY = "-23.5505,-46.6333"


def nominatim_payload(lat: float = SAO_PAULO_LAT, lng: float = SAO_PAULO_LNG) -> dict[str, Any]:
    """A realistic Nominatim /reverse body for central São Paulo."""
    return {
        "place_id": 1234,
        "lat": str(lat),
        "lon": str(lng),
        "display_name": "1578, Avenida Paulista, Bela Vista, São Paulo, Região Metropolitana de São Paulo, 01310-200, Brasil",
        "address": {
            "house_number": "1578",
            "road": "Avenida Paulista",
            "suburb": "Bela Vista",
            "city": "São Paulo",
            "state": "São Paulo",
            "ISO3166-2-lvl4": "BR-SP",
            "postcode": "01310200",
            "country": "Brasil",
            "country_code": "br",
        },
    }


EXPECTED_ADDRESS = "Avenida Paulista, 1578 - Bela Vista São Paulo-SP, 01310-200"


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout`` seconds."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(interval)


@pytest.fixture
def settings() -> Settings:
    """Test application settings."""
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite:///:memory:",
        geocode_queue_disabled=True,
        geocode_pipeline_enabled=False,
        geocoder_provider="nominatim",
        geocoder_qps=1000.0,
        geocoder_max_concurrent=3,
        geocode_backoff_ms="10,20",
    )


@pytest.fixture
async def async_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """Create a file-backed async SQLite engine for testing.

    A file (not :memory:) so concurrent sessions get their own connections.
    """
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, expire_on_commit=False)


@pytest.fixture
async def async_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    """Create a per-test async session."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_position(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Any]:
    """Insert a position row and return its id."""

    async def _make(
        lat: float = SAO_PAULO_LAT,
        lng: float = SAO_PAULO_LNG,
        *,
        device_id: int | None = 1,
        fix_time: datetime | None = None,
        address_status: AddressStatus | None = None,
        address_updated_at: datetime | None = None,
        full_address: str | None = None,
    ) -> int:
        async with session_factory() as session:
            position = Position(
                device_id=device_id,
                fix_time=fix_time or datetime.now(UTC) - timedelta(minutes=5),
                latitude=lat,
                longitude=lng,
                address_status=str(address_status) if address_status else None,
                address_updated_at=address_updated_at,
                full_address=full_address,
            )
            session.add(position)
            await session.commit()
            return position.id

    return _make


class InMemoryPositionStore:
    """Position store double keeping rows in a dict keyed by string id."""

    def __init__(self) -> None:
        self.positions: dict[str, PositionRecord] = {}
        self.errors: dict[str, str] = {}
        self.fail_ids: set[str] = set()

    def add(self, record: PositionRecord) -> PositionRecord:
        self.positions[str(record.id)] = record
        return record

    def status_of(self, position_id: str | int) -> str | None:
        return self.positions[str(position_id)].address_status

    async def fetch_missing_addresses(
        self,
        statuses: Sequence[str],
        include_null: bool,
        lookback_minutes: int,
        limit: int,
        stale_before: datetime | None = None,
    ) -> list[PositionRecord]:
        rows = [
            p
            for p in self.positions.values()
            if (include_null and p.address_status is None) or p.address_status in statuses
        ]
        return sorted(rows, key=lambda p: p.id)[:limit]

    async def fetch_unresolved_range(
        self,
        fix_from: datetime | None,
        fix_to: datetime | None,
        after_id: int | None,
        limit: int,
    ) -> list[PositionRecord]:
        rows = [
            p
            for p in self.positions.values()
            if not p.full_address
            and (after_id is None or p.id > after_id)
            and (fix_from is None or (p.fix_time is not None and p.fix_time >= fix_from))
            and (fix_to is None or (p.fix_time is not None and p.fix_time <= fix_to))
        ]
        return sorted(rows, key=lambda p: p.id)[:limit]

    async def mark_pending(self, ids: Iterable[str | int], provider: str | None = None) -> int:
        return self._set(ids, AddressStatus.PENDING)

    async def mark_failed(self, ids: Iterable[str | int], error: str, provider: str | None = None) -> int:
        count = self._set(ids, AddressStatus.FAILED)
        for position_id in ids:
            self.errors[str(position_id)] = error[:200]
        return count

    def _set(self, ids: Iterable[str | int], status: AddressStatus) -> int:
        count = 0
        for position_id in ids:
            record = self.positions.get(str(position_id))
            if record is not None:
                record.address_status = str(status)
                record.address_updated_at = datetime.now(UTC)
                count += 1
        return count

    async def update_full_address(self, position_id: str | int, address: str, provider: str | None = None) -> bool:
        if str(position_id) in self.fail_ids:
            msg = f"write failed for {position_id}"
            raise RuntimeError(msg)
        record = self.positions.get(str(position_id))
        if record is None:
            return False
        record.full_address = address
        record.address_provider = provider
        record.address_status = str(AddressStatus.RESOLVED)
        record.address_updated_at = datetime.now(UTC)
        return True

    async def fetch_latest_resolved_for_device(self, device_id: int | str) -> PositionRecord | None:
        resolved = [
            p
            for p in self.positions.values()
            if str(p.device_id) == str(device_id) and p.address_status == AddressStatus.RESOLVED and p.full_address
        ]
        return max(resolved, key=lambda p: p.id, default=None)


@pytest.fixture
def position_store() -> InMemoryPositionStore:
    return InMemoryPositionStore()


class ProviderStub:
    """Scripted HTTP responses for provider calls, counting requests."""

    def __init__(self, responses: list[httpx.Response] | None = None) -> None:
        self.responses = list(responses or [])
        self.default_payload = nominatim_payload()
        self.requests: list[httpx.Request] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.responses:
            return self.responses.pop(0)
        return httpx.Response(200, json=self.default_payload)


@pytest.fixture
def provider_stub() -> ProviderStub:
    return ProviderStub()


@pytest.fixture
async def http_client(provider_stub: ProviderStub) -> AsyncGenerator[httpx.AsyncClient]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(provider_stub)) as client:
        yield client


@pytest.fixture
def provider_client(http_client: httpx.AsyncClient) -> ProviderClient:
    """Nominatim client over the stub transport with no real waits."""

    async def _no_sleep(_: float) -> None:
        return None

    return ProviderClient(
        NominatimGeocoder(user_agent="fleet-geocoder-tests/1.0"),
        limiter=LookupLimiter(max_concurrent=3, qps=1000.0),
        http_client=http_client,
        timeout=2.0,
        sleep=_no_sleep,
    )

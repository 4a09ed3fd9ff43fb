"""Integration tests for the /geocode endpoints."""

from collections.abc import AsyncGenerator

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from fleet_geocoder.api.v1.geocode import geocode_router
from fleet_geocoder.core.config import Settings
from fleet_geocoder.services.pipeline import GeocodePipeline
from tests.conftest import SAO_PAULO_KEY, SAO_PAULO_LAT, SAO_PAULO_LNG


@pytest.fixture
async def pipeline(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
) -> AsyncGenerator[GeocodePipeline]:
    """Initialized pipeline with no background work, so jobs stay queued."""
    pipeline = GeocodePipeline(settings, session_factory=session_factory, http_client=http_client)
    await pipeline.init(start_workers=False, start_monitor=False)
    yield pipeline
    await pipeline.shutdown()


@pytest.fixture
def app(pipeline: GeocodePipeline) -> FastAPI:
    """Create a minimal FastAPI app with the geocode router."""
    app = FastAPI()
    app.include_router(geocode_router, prefix="/api/v1")
    app.state.geocode_pipeline = pipeline
    return app


@pytest.fixture
def client(app: FastAPI) -> AsyncClient:
    """Create an async test client."""
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestEnqueueEndpoint:
    """Tests for POST /api/v1/geocode/jobs."""

    async def test_accepts_job(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": SAO_PAULO_LAT, "longitude": SAO_PAULO_LNG, "position_id": 10, "device_id": 3},
        )

        assert response.status_code == 202
        body = response.json()
        assert body["job_id"] == f"geocode:grid:{SAO_PAULO_KEY}"
        assert body["grid_key"] == SAO_PAULO_KEY
        assert body["position_ids"] == ["10"]
        assert body["priority"] == "normal"
        assert body["reason"] == "manual"
        assert body["state"] == "waiting"
        assert body["queue_driver"] == "memory"

    async def test_same_cell_merges(self, client: AsyncClient) -> None:
        await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": -23.55051, "longitude": -46.63331, "position_id": 1},
        )
        response = await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": -23.55049, "longitude": -46.63329, "position_ids": [2, 3], "priority": "high"},
        )

        assert response.status_code == 202
        assert response.json()["position_ids"] == ["1", "2", "3"]

    async def test_null_island_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/geocode/jobs", json={"latitude": 0, "longitude": 0})
        assert response.status_code == 422

    async def test_out_of_range_rejected(self, client: AsyncClient) -> None:
        response = await client.post("/api/v1/geocode/jobs", json={"latitude": 91, "longitude": 10})
        assert response.status_code == 422

    async def test_unknown_priority_rejected(self, client: AsyncClient) -> None:
        response = await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": SAO_PAULO_LAT, "longitude": SAO_PAULO_LNG, "priority": "urgent"},
        )
        assert response.status_code == 422

    async def test_queue_failure_is_422(self, client: AsyncClient, pipeline: GeocodePipeline) -> None:
        async def broken(*args: object, **kwargs: object) -> None:
            raise RuntimeError("broker down")

        pipeline.queue.get_job = broken  # type: ignore[method-assign]
        response = await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": SAO_PAULO_LAT, "longitude": SAO_PAULO_LNG, "position_id": 1},
        )
        assert response.status_code == 422


class TestStatusEndpoint:
    """Tests for GET /api/v1/geocode/status."""

    async def test_reports_components(self, client: AsyncClient) -> None:
        await client.post(
            "/api/v1/geocode/jobs",
            json={"latitude": SAO_PAULO_LAT, "longitude": SAO_PAULO_LNG, "position_id": 1},
        )
        response = await client.get("/api/v1/geocode/status")

        assert response.status_code == 200
        body = response.json()
        assert body["initialized"] is True
        assert body["queue"]["driver"] == "memory"
        assert body["queue"]["waiting"] == 1
        assert body["provider"]["provider"] == "nominatim"
        assert body["worker"]["running"] is False
        assert body["monitor"]["running"] is False


class TestPipelineUnavailable:
    """Tests for requests when the pipeline is not running."""

    async def test_returns_503(self) -> None:
        app = FastAPI()
        app.include_router(geocode_router, prefix="/api/v1")
        app.state.geocode_pipeline = None
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            response = await client.get("/api/v1/geocode/status")
            assert response.status_code == 503


class TestCreateApp:
    """Tests for the application factory."""

    def test_routes_registered(self) -> None:
        from fleet_geocoder.main import create_app

        paths = {route.path for route in create_app().routes}
        assert "/api/v1/geocode/jobs" in paths
        assert "/api/v1/geocode/status" in paths

"""FastAPI application factory.

Creates the FastAPI app with lifespan management (database engine and
geocode pipeline), exception handlers, and OpenAPI metadata.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from fleet_geocoder.core.config import get_settings
from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
from fleet_geocoder.core.logging import setup_logging


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None]:
    """Init engine and pipeline on startup; shut both down on exit."""
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_dir)
    init_engine(settings.database_url, echo=False)

    pipeline = None
    if settings.geocode_pipeline_enabled:
        from fleet_geocoder.services.pipeline import GeocodePipeline

        pipeline = GeocodePipeline(settings, session_factory=get_session_factory())
        await pipeline.init()
    app.state.geocode_pipeline = pipeline

    yield

    if pipeline is not None:
        await pipeline.shutdown()
    app.state.geocode_pipeline = None
    await dispose_engine()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application instance.
    """
    settings = get_settings()

    app = FastAPI(
        title="Fleet Geocoder",
        description="Reverse-geocoding pipeline for device positions",
        version="0.1.0",
        lifespan=lifespan,
    )

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"detail": str(exc)},
        )

    from fleet_geocoder.api.router import create_router

    app.include_router(create_router(settings))

    return app

"""Typer CLI root application with serve and worker commands."""

import asyncio
import signal

import typer
from loguru import logger

from fleet_geocoder.core.config import get_settings
from fleet_geocoder.core.logging import setup_logging

app = typer.Typer(name="fleet-geocoder", help="Reverse-geocoding pipeline for fleet positions")


@app.callback()
def _main_callback() -> None:
    """Initialize logging for all CLI commands."""
    settings = get_settings()
    setup_logging(settings.log_level, log_dir=settings.log_dir)


@app.command()
def serve(
    reload: bool = typer.Option(False, "--reload", help="Enable auto-reload for development"),
    host: str = typer.Option("0.0.0.0", "--host", help="Bind host"),  # noqa: S104
    port: int = typer.Option(8000, "--port", help="Bind port"),
) -> None:
    """Start the API server (and the pipeline, unless disabled)."""
    import uvicorn

    uvicorn.run(
        "fleet_geocoder.main:create_app",
        factory=True,
        host=host,
        port=port,
        reload=reload,
    )


@app.command()
def worker(
    no_monitor: bool = typer.Option(  # noqa: FBT001
        False, "--no-monitor", help="Only consume jobs; skip the scan/retry loops"
    ),
) -> None:
    """Run the worker pool and monitor loops without the API server."""
    asyncio.run(_run_worker(start_monitor=not no_monitor))


async def _run_worker(start_monitor: bool) -> None:
    """Async implementation of the standalone worker."""
    from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
    from fleet_geocoder.services.pipeline import GeocodePipeline

    settings = get_settings()
    init_engine(settings.database_url)
    pipeline = GeocodePipeline(settings, session_factory=get_session_factory())

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    try:
        await pipeline.init(start_workers=True, start_monitor=start_monitor)
        typer.echo(f"Worker running (queue={pipeline.queue.driver}, provider={pipeline.client.provider_name})")
        await stop.wait()
        logger.info("Shutdown signal received")
    finally:
        await pipeline.shutdown()
        await dispose_engine()


def _register_subcommands() -> None:
    """Register all CLI subcommand groups."""
    from fleet_geocoder.cli.cache_cmd import cache_app
    from fleet_geocoder.cli.db_cmd import db_app
    from fleet_geocoder.cli.geocode_cmd import geocode_app

    app.add_typer(db_app, name="db", help="Database migration commands")
    app.add_typer(geocode_app, name="geocode", help="Reverse geocoding commands")
    app.add_typer(cache_app, name="cache", help="Geocode cache commands")


_register_subcommands()

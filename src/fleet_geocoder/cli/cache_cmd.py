"""Geocode cache CLI commands."""

import asyncio

import typer

cache_app = typer.Typer()


@cache_app.command("stats")
def stats() -> None:
    """Show geocode cache entry and hit counts."""
    asyncio.run(_stats())


async def _stats() -> None:
    from fleet_geocoder.core.config import get_settings
    from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
    from fleet_geocoder.lib.geocoder import GeocodeCache

    settings = get_settings()
    init_engine(settings.database_url)
    try:
        cache = GeocodeCache(get_session_factory(), precision=settings.geocode_grid_precision)
        await cache.hydrate()
        summary = cache.stats()
        typer.echo("Geocode cache:")
        typer.echo(f"  Entries:          {summary['entries']}")
        typer.echo(f"  Resolved entries: {summary['resolved_entries']}")
        typer.echo(f"  Total hits:       {summary['total_hits']}")
    finally:
        await dispose_engine()

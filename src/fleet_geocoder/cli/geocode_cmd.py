"""Geocode CLI commands: one-off lookups, manual enqueue, sweeps, and backfill."""

import asyncio
import time
from datetime import datetime

import typer

geocode_app = typer.Typer()


@geocode_app.command("resolve")
def resolve(
    lat: float = typer.Argument(..., help="Latitude (-90 to 90)"),  # noqa: B008
    lng: float = typer.Argument(..., help="Longitude (-180 to 180)"),  # noqa: B008
) -> None:
    """Reverse-geocode one coordinate pair against the configured provider."""
    asyncio.run(_resolve(lat, lng))


@geocode_app.command("enqueue")
def enqueue(
    lat: float = typer.Argument(..., help="Latitude (-90 to 90)"),  # noqa: B008
    lng: float = typer.Argument(..., help="Longitude (-180 to 180)"),  # noqa: B008
    position_id: list[str] = typer.Option([], "--position-id", help="Position id (repeatable)"),  # noqa: B008
    device_id: str | None = typer.Option(None, "--device-id", help="Device that produced the fix"),
    priority: str = typer.Option("normal", "--priority", help="normal or high"),
    process: bool = typer.Option(False, "--process", help="Also run the worker until the job finishes"),  # noqa: FBT001
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds to wait with --process"),
) -> None:
    """Queue positions for reverse geocoding."""
    if priority not in ("normal", "high"):
        raise typer.BadParameter("priority must be 'normal' or 'high'")
    asyncio.run(_enqueue(lat, lng, position_id, device_id, priority, process, timeout))


@geocode_app.command("scan")
def scan(
    failed: bool = typer.Option(  # noqa: FBT001
        False, "--failed", help="Run the FAILED-retry sweep instead of the scan"
    ),
) -> None:
    """Run one monitor sweep and report how many positions were queued."""
    asyncio.run(_scan(failed))


_DATE_FORMATS = ["%Y-%m-%d", "%Y-%m-%dT%H:%M:%S", "%Y-%m-%d %H:%M:%S"]


@geocode_app.command("backfill")
def backfill(
    fix_from: datetime | None = typer.Option(  # noqa: B008
        None, "--from", formats=_DATE_FORMATS, help="Oldest fix time (UTC)"
    ),
    fix_to: datetime | None = typer.Option(  # noqa: B008
        None, "--to", formats=_DATE_FORMATS, help="Newest fix time (UTC)"
    ),
    max_positions: int = typer.Option(1000, "--max", min=1, help="Stop after this many positions"),
    batch: int = typer.Option(500, "--batch", min=1, help="Positions read per page"),
    after_id: int | None = typer.Option(None, "--after-id", help="Resume after this position id"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Count without queueing"),  # noqa: FBT001
) -> None:
    """Queue historical positions that have no address yet."""
    if fix_from is not None and fix_to is not None and fix_from > fix_to:
        raise typer.BadParameter("--from must not be after --to")
    asyncio.run(_backfill(fix_from, fix_to, max_positions, batch, after_id, dry_run))


async def _resolve(lat: float, lng: float) -> None:
    """Async implementation of a single lookup."""
    from fleet_geocoder.core.config import get_settings
    from fleet_geocoder.lib.geocoder import create_provider_client
    from fleet_geocoder.lib.geocoder.errors import GeocodePipelineError

    client = create_provider_client(get_settings())
    try:
        result = await client.resolve(lat, lng)
    except GeocodePipelineError as e:
        typer.echo(f"Lookup failed: {e}", err=True)
        raise typer.Exit(code=1) from e
    finally:
        await client.aclose()

    typer.echo(f"Address:  {result.formatted_address}")
    typer.echo(f"Provider: {client.provider_name}")
    if result.display_name and result.display_name != result.formatted_address:
        typer.echo(f"Display:  {result.display_name}")


async def _enqueue(
    lat: float,
    lng: float,
    position_ids: list[str],
    device_id: str | None,
    priority: str,
    process: bool,
    timeout: float,
) -> None:
    """Async implementation of a manual enqueue."""
    from fleet_geocoder.core.config import get_settings
    from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
    from fleet_geocoder.services.pipeline import GeocodePipeline

    settings = get_settings()
    init_engine(settings.database_url)
    pipeline = GeocodePipeline(settings, session_factory=get_session_factory())
    try:
        await pipeline.init(start_workers=process, start_monitor=False)
        handle = await pipeline.enqueue(
            lat, lng, position_ids=list(position_ids), device_id=device_id, priority=priority
        )
        if handle is None:
            typer.echo("Coordinates could not be queued", err=True)
            raise typer.Exit(code=1)

        typer.echo(f"Job queued: {handle.id}")
        typer.echo(f"  Grid key:  {handle.data.grid_key}")
        typer.echo(f"  Positions: {', '.join(handle.data.position_ids) or '-'}")
        typer.echo(f"  Queue:     {pipeline.queue.driver}")

        if process:
            deadline = time.monotonic() + timeout
            while await pipeline.queue.get_job(handle.id) is not None:
                if time.monotonic() > deadline:
                    typer.echo("Timed out waiting for the job", err=True)
                    raise typer.Exit(code=1)
                await asyncio.sleep(0.2)
            entry = pipeline.cache.get(handle.data.grid_key)
            typer.echo(f"  Address:   {entry.formatted_address if entry else '(unresolved)'}")
        elif pipeline.queue.driver == "memory":
            typer.echo("Warning: in-memory queue; the job is lost when this command exits (use --process)")
    finally:
        await pipeline.shutdown()
        await dispose_engine()


async def _scan(failed: bool) -> None:
    """Async implementation of one monitor sweep."""
    from fleet_geocoder.core.config import get_settings
    from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
    from fleet_geocoder.services.pipeline import GeocodePipeline

    settings = get_settings()
    init_engine(settings.database_url)
    pipeline = GeocodePipeline(settings, session_factory=get_session_factory())
    try:
        await pipeline.init(start_workers=False, start_monitor=False)
        result = await (pipeline.monitor.retry_once() if failed else pipeline.monitor.scan_once())
        typer.echo(f"{'Retry' if failed else 'Scan'} complete:")
        typer.echo(f"  Scanned: {result.scanned}")
        typer.echo(f"  Queued:  {result.queued}")
        typer.echo(f"  Queue:   {pipeline.queue.driver}")
    finally:
        await pipeline.shutdown()
        await dispose_engine()


async def _backfill(
    fix_from: datetime | None,
    fix_to: datetime | None,
    max_positions: int,
    batch: int,
    after_id: int | None,
    dry_run: bool,
) -> None:
    """Async implementation of a backfill run."""
    from fleet_geocoder.core.config import get_settings
    from fleet_geocoder.core.database import dispose_engine, get_session_factory, init_engine
    from fleet_geocoder.services.backfill import GeocodeBackfill
    from fleet_geocoder.services.pipeline import GeocodePipeline
    from fleet_geocoder.services.position_store import as_utc

    settings = get_settings()
    init_engine(settings.database_url)
    pipeline = GeocodePipeline(settings, session_factory=get_session_factory())
    try:
        await pipeline.init(start_workers=False, start_monitor=False)
        runner = GeocodeBackfill(
            pipeline.store, pipeline.enqueuer, batch_size=batch, provider=pipeline.client.provider_name
        )
        result = await runner.run(
            fix_from=as_utc(fix_from),
            fix_to=as_utc(fix_to),
            max_positions=max_positions,
            after_id=after_id,
            dry_run=dry_run,
        )
        typer.echo(f"Backfill complete{' (dry run)' if dry_run else ''}:")
        typer.echo(f"  Processed: {result.processed}")
        typer.echo(f"  Queued:    {result.queued}")
        typer.echo(f"  Skipped:   {result.skipped}")
        typer.echo(f"  Remaining: {result.remaining}")
        typer.echo(f"  Last id:   {result.last_id if result.last_id is not None else '-'}")
        typer.echo(f"  Queue:     {pipeline.queue.driver}")
        if not dry_run and result.queued and pipeline.queue.driver == "memory":
            typer.echo("Warning: in-memory queue; queued jobs are lost when this command exits")
    finally:
        await pipeline.shutdown()
        await dispose_engine()

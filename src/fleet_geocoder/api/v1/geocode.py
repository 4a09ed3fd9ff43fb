"""Geocode pipeline endpoints: manual enqueue and status."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from fleet_geocoder.core.dependencies import get_pipeline
from fleet_geocoder.schemas.geocode import GeocodeJobRequest, GeocodeJobResponse, GeocodeStatusResponse
from fleet_geocoder.services.pipeline import GeocodePipeline

geocode_router = APIRouter(prefix="/geocode", tags=["geocode"])


@geocode_router.post(
    "/jobs",
    response_model=GeocodeJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def enqueue_geocode_job(
    request: GeocodeJobRequest,
    pipeline: Annotated[GeocodePipeline, Depends(get_pipeline)],
) -> GeocodeJobResponse:
    """Queue positions for reverse geocoding.

    Positions in the same grid cell as an already-queued job are merged
    into that job.
    """
    handle = await pipeline.enqueue(
        request.latitude,
        request.longitude,
        position_id=request.position_id,
        position_ids=list(request.position_ids),
        device_id=request.device_id,
        reason=request.reason,
        priority=request.priority,
        delay_ms=request.delay_ms,
    )
    if handle is None:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Coordinates could not be queued for geocoding.",
        )

    return GeocodeJobResponse(
        job_id=handle.id,
        grid_key=handle.data.grid_key,
        position_ids=list(handle.data.position_ids),
        priority=str(handle.options.priority),
        reason=str(handle.data.reason),
        state=str(handle.state),
        attempts_made=handle.attempts_made,
        queue_driver=pipeline.queue.driver,
    )


@geocode_router.get("/status", response_model=GeocodeStatusResponse)
async def geocode_status(
    pipeline: Annotated[GeocodePipeline, Depends(get_pipeline)],
) -> GeocodeStatusResponse:
    """Queue, cache, provider, worker, and monitor state."""
    return GeocodeStatusResponse(**await pipeline.status())

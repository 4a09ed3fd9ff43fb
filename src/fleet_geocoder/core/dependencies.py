"""FastAPI dependency injection for the geocode pipeline."""

from fastapi import HTTPException, Request, status

from fleet_geocoder.services.pipeline import GeocodePipeline


def get_pipeline(request: Request) -> GeocodePipeline:
    """Return the pipeline started by the application lifespan.

    Raises:
        HTTPException: 503 if the pipeline is disabled or not yet started.
    """
    pipeline: GeocodePipeline | None = getattr(request.app.state, "geocode_pipeline", None)
    if pipeline is None or not pipeline.initialized:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Geocode pipeline is not running.",
        )
    return pipeline

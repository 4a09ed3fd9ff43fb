"""Root API router with /api/v1 prefix."""

from fastapi import APIRouter

from fleet_geocoder.core.config import Settings


def create_router(settings: Settings) -> APIRouter:
    """Create the root API router with all sub-routers included.

    Args:
        settings: Application settings.

    Returns:
        Configured API router.
    """
    from fleet_geocoder.api.v1.geocode import geocode_router

    root_router = APIRouter(prefix=settings.api_v1_prefix)
    root_router.include_router(geocode_router)

    return root_router

"""Geocoder library: reverse geocoding with grid-keyed caching.

Public API:
    - build_grid_key / normalize_coordinate / is_geocodable: Grid keys
    - AddressParts / format_full_address: Address normalization
    - BaseReverseGeocoder: Abstract provider interface
    - ReverseGeocodeResult: Result dataclass
    - NominatimGeocoder: OpenStreetMap Nominatim (and LocationIQ) provider
    - PhotonGeocoder: Photon (Komoot) provider
    - GoogleMapsGeocoder: Google Maps provider
    - LookupLimiter: Process-wide concurrency and rate limiter
    - ProviderClient: Rate-limited, retrying lookup client
    - GeocodeCache: Write-through grid-keyed address cache
    - get_geocoder: Provider factory/registry
    - create_provider_client: Build the client from settings
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from fleet_geocoder.lib.geocoder.address import AddressParts, format_full_address
from fleet_geocoder.lib.geocoder.base import BaseReverseGeocoder, ReverseGeocodeResult
from fleet_geocoder.lib.geocoder.cache import CachedAddress, GeocodeCache
from fleet_geocoder.lib.geocoder.client import ProviderClient
from fleet_geocoder.lib.geocoder.errors import (
    CoordinateValidationError,
    GeocodingProviderError,
    ProviderPermanentError,
    ProviderTransientError,
)
from fleet_geocoder.lib.geocoder.google_maps import GoogleMapsGeocoder
from fleet_geocoder.lib.geocoder.grid import build_grid_key, is_geocodable, normalize_coordinate
from fleet_geocoder.lib.geocoder.limiter import LookupLimiter
from fleet_geocoder.lib.geocoder.nominatim import NominatimGeocoder
from fleet_geocoder.lib.geocoder.photon import PhotonGeocoder

if TYPE_CHECKING:
    import httpx

    from fleet_geocoder.core.config import Settings

# Provider registry
_PROVIDERS: dict[str, type[BaseReverseGeocoder]] = {
    "nominatim": NominatimGeocoder,
    "photon": PhotonGeocoder,
    "google": GoogleMapsGeocoder,
}


def get_available_providers() -> list[str]:
    """Return the names of all registered geocoder providers.

    Returns:
        Sorted list of provider name strings.
    """
    return sorted(_PROVIDERS.keys())


def get_geocoder(provider: str = "nominatim", **kwargs: Any) -> BaseReverseGeocoder:
    """Get a geocoder instance by provider name.

    Args:
        provider: Provider name (e.g., "nominatim").
        **kwargs: Forwarded to the provider constructor
            (``base_url``, ``api_key``, ``user_agent``).

    Returns:
        An instance of the requested provider.

    Raises:
        ValueError: If the provider is not registered.
    """
    cls = _PROVIDERS.get(provider)
    if cls is None:
        msg = f"Unknown geocoder provider: {provider!r}. Available: {list(_PROVIDERS.keys())}"
        raise ValueError(msg)
    return cls(**kwargs)


def create_provider_client(settings: Settings, http_client: httpx.AsyncClient | None = None) -> ProviderClient:
    """Build the process-wide provider client from settings.

    Args:
        settings: Application settings.
        http_client: Optional injected HTTP client.

    Returns:
        A ProviderClient with its own limiter.

    Raises:
        ValueError: If the provider needs an API key and none is configured.
    """
    geocoder = get_geocoder(
        settings.geocoder_provider,
        base_url=settings.geocoder_base_url,
        api_key=settings.geocoder_api_key,
        user_agent=settings.geocoder_user_agent,
    )
    if not geocoder.is_configured:
        msg = f"Geocoder provider {geocoder.provider_name!r} requires GEOCODER_API_KEY"
        raise ValueError(msg)
    limiter = LookupLimiter(max_concurrent=settings.geocoder_max_concurrent, qps=settings.geocoder_qps)
    return ProviderClient(
        geocoder,
        limiter=limiter,
        http_client=http_client,
        timeout=settings.geocoder_timeout_seconds,
        zoom=settings.geocoder_zoom,
    )


__all__ = [
    "AddressParts",
    "BaseReverseGeocoder",
    "CachedAddress",
    "CoordinateValidationError",
    "GeocodeCache",
    "GeocodingProviderError",
    "GoogleMapsGeocoder",
    "LookupLimiter",
    "NominatimGeocoder",
    "PhotonGeocoder",
    "ProviderClient",
    "ProviderPermanentError",
    "ProviderTransientError",
    "ReverseGeocodeResult",
    "build_grid_key",
    "create_provider_client",
    "format_full_address",
    "get_available_providers",
    "get_geocoder",
    "is_geocodable",
    "normalize_coordinate",
]

"""OpenStreetMap Nominatim reverse geocoder provider.

Uses the Nominatim reverse API (https://nominatim.org/release-docs/develop/api/Reverse/).
Free but rate-limited to 1 req/sec on the public instance; LocationIQ and
self-hosted instances speak the same protocol via ``base_url``.
"""

from typing import Any

from loguru import logger

from fleet_geocoder.lib.geocoder.address import parts_from_provider
from fleet_geocoder.lib.geocoder.base import (
    DEFAULT_ZOOM,
    BaseReverseGeocoder,
    ProviderRequest,
    ReverseGeocodeResult,
)
from fleet_geocoder.lib.geocoder.errors import ProviderPermanentError

NOMINATIM_BASE_URL = "https://nominatim.openstreetmap.org"


class NominatimGeocoder(BaseReverseGeocoder):
    """OpenStreetMap Nominatim reverse geocoder."""

    default_base_url = NOMINATIM_BASE_URL

    @property
    def provider_name(self) -> str:
        return "nominatim"

    def build_request(
        self,
        lat: float,
        lng: float,
        *,
        zoom: int = DEFAULT_ZOOM,
        address_details: bool = True,
    ) -> ProviderRequest:
        params: dict[str, str | int | float] = {
            "format": "json",
            "lat": lat,
            "lon": lng,
            "zoom": zoom,
            "addressdetails": 1 if address_details else 0,
        }
        if self._api_key:
            params["key"] = self._api_key
        return ProviderRequest(url=self._join("reverse"), params=params, headers=self._default_headers())

    def parse_response(self, data: Any, lat: float, lng: float) -> ReverseGeocodeResult | None:
        if not data or not isinstance(data, dict):
            return None
        # Nominatim answers 200 with {"error": "Unable to geocode"} for open sea etc.
        if "error" in data:
            logger.debug(f"Nominatim returned no match: {data.get('error')}")
            return None

        try:
            result_lat = float(data.get("lat", lat))
            result_lng = float(data.get("lon", lng))
        except (ValueError, TypeError) as e:
            logger.warning(f"Failed to parse Nominatim response: {e}")
            raise ProviderPermanentError("nominatim", f"Failed to parse response: {e}") from e

        return ReverseGeocodeResult(
            latitude=result_lat,
            longitude=result_lng,
            display_name=data.get("display_name"),
            address_parts=parts_from_provider(data.get("address")),
            raw_response=data,
        )

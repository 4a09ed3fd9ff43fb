"""Google Maps reverse geocoding provider.

Uses the Google Maps Geocoding API in reverse mode
(https://developers.google.com/maps/documentation/geocoding/requests-reverse-geocoding).
Requires an API key.
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
from fleet_geocoder.lib.geocoder.errors import ProviderPermanentError, ProviderTransientError

GOOGLE_BASE_URL = "https://maps.googleapis.com/maps/api/geocode"

# Google address_components type -> provider-neutral key understood by parts_from_provider
_COMPONENT_KEYS: dict[str, str] = {
    "route": "road",
    "street_number": "house_number",
    "sublocality": "suburb",
    "sublocality_level_1": "suburb",
    "neighborhood": "neighbourhood",
    "administrative_area_level_2": "city",
    "locality": "city",
    "administrative_area_level_1": "state",
    "postal_code": "postcode",
    "country": "country",
}


class GoogleMapsGeocoder(BaseReverseGeocoder):
    """Google Maps reverse geocoder."""

    default_base_url = GOOGLE_BASE_URL

    @property
    def provider_name(self) -> str:
        return "google"

    @property
    def requires_api_key(self) -> bool:
        return True

    def build_request(
        self,
        lat: float,
        lng: float,
        *,
        zoom: int = DEFAULT_ZOOM,
        address_details: bool = True,
    ) -> ProviderRequest:
        params: dict[str, str | int | float] = {"latlng": f"{lat},{lng}", "key": self._api_key}
        return ProviderRequest(url=self._join("json"), params=params, headers=self._default_headers())

    def parse_response(self, data: Any, lat: float, lng: float) -> ReverseGeocodeResult | None:
        """Parse a Google Geocoding API response.

        Raises:
            ProviderTransientError: On OVER_QUERY_LIMIT (quota resets, so the
                queue should try again later).
            ProviderPermanentError: On other API error statuses.
        """
        if not isinstance(data, dict):
            raise ProviderPermanentError("google", "Unexpected response body")
        api_status = data.get("status", "UNKNOWN")

        if api_status == "ZERO_RESULTS":
            return None
        if api_status == "OVER_QUERY_LIMIT":
            raise ProviderTransientError("google", "API error: OVER_QUERY_LIMIT", status_code=429)
        if api_status in ("REQUEST_DENIED", "INVALID_REQUEST"):
            msg = data.get("error_message", api_status)
            raise ProviderPermanentError("google", f"API error: {msg}")
        if api_status != "OK":
            raise ProviderPermanentError("google", f"Unexpected API status: {api_status}")

        results = data.get("results", [])
        if not results:
            return None

        best = results[0]
        try:
            location = best["geometry"]["location"]
            result_lat = float(location["lat"])
            result_lng = float(location["lng"])
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Failed to parse Google Maps response: {e}")
            raise ProviderPermanentError("google", f"Failed to parse response: {e}") from e

        return ReverseGeocodeResult(
            latitude=result_lat,
            longitude=result_lng,
            display_name=best.get("formatted_address"),
            address_parts=parts_from_provider(self._components_to_details(best.get("address_components", []))),
            raw_response=data,
        )

    @staticmethod
    def _components_to_details(components: list[dict]) -> dict[str, str]:
        """Flatten address_components into a Nominatim-like ``address`` dict."""
        details: dict[str, str] = {}
        for component in components:
            for component_type in component.get("types", []):
                key = _COMPONENT_KEYS.get(component_type)
                if key is None or key in details:
                    continue
                if key == "state":
                    details["state_code"] = component.get("short_name", "")
                if key == "country":
                    details["country_code"] = component.get("short_name", "")
                details[key] = component.get("long_name", "")
        return details

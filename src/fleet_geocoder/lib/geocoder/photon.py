"""Photon (Komoot) reverse geocoder provider.

Uses the Photon reverse endpoint (https://photon.komoot.io/reverse).
Free, open-source, and self-hostable. Based on OpenStreetMap data.
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

PHOTON_BASE_URL = "https://photon.komoot.io"


class PhotonGeocoder(BaseReverseGeocoder):
    """Photon (Komoot) reverse geocoder."""

    default_base_url = PHOTON_BASE_URL

    @property
    def provider_name(self) -> str:
        return "photon"

    def build_request(
        self,
        lat: float,
        lng: float,
        *,
        zoom: int = DEFAULT_ZOOM,
        address_details: bool = True,
    ) -> ProviderRequest:
        # Photon has no zoom or detail switches; properties are always included
        params: dict[str, str | int | float] = {"lat": lat, "lon": lng, "limit": 1}
        return ProviderRequest(url=self._join("reverse"), params=params, headers=self._default_headers())

    def parse_response(self, data: Any, lat: float, lng: float) -> ReverseGeocodeResult | None:
        if not isinstance(data, dict):
            raise ProviderPermanentError("photon", "Unexpected response body")
        features = data.get("features", [])
        if not features:
            return None

        best = features[0]
        try:
            coords = best["geometry"]["coordinates"]
            result_lng = float(coords[0])
            result_lat = float(coords[1])
        except (KeyError, IndexError, ValueError, TypeError) as e:
            logger.warning(f"Failed to parse Photon response: {e}")
            raise ProviderPermanentError("photon", f"Failed to parse response: {e}") from e

        properties = best.get("properties", {})
        return ReverseGeocodeResult(
            latitude=result_lat,
            longitude=result_lng,
            display_name=self._build_display_name(properties),
            address_parts=parts_from_provider(properties),
            raw_response=data,
        )

    @staticmethod
    def _build_display_name(properties: dict) -> str | None:
        """Build a human-readable line from Photon properties."""
        parts = []
        if properties.get("name") and properties.get("name") != properties.get("street"):
            parts.append(properties["name"])
        if properties.get("street"):
            street = properties["street"]
            if properties.get("housenumber"):
                street = f"{street}, {properties['housenumber']}"
            parts.append(street)
        for key in ("district", "city", "state", "postcode", "country"):
            if properties.get(key):
                parts.append(str(properties[key]))

        return ", ".join(parts) if parts else None

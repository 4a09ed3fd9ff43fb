"""Abstract reverse geocoder interface for pluggable provider support.

A provider only knows how to build its HTTP request and how to read the
response. Transport, rate limiting, and retries live in
:class:`~fleet_geocoder.lib.geocoder.client.ProviderClient`, so every
provider gets the same limiter and retry policy.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from fleet_geocoder.lib.geocoder.address import AddressParts, best_address_line

DEFAULT_ZOOM = 18


@dataclass
class ProviderRequest:
    """An HTTP GET request as built by a provider."""

    url: str
    params: dict[str, str | int | float]
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class ReverseGeocodeResult:
    """Normalized result of a reverse lookup."""

    latitude: float
    longitude: float
    display_name: str | None = None
    address_parts: AddressParts = field(default_factory=AddressParts)
    raw_response: dict | list | None = None

    def __post_init__(self) -> None:
        if not (-90 <= self.latitude <= 90):
            msg = f"latitude must be between -90 and 90, got {self.latitude}"
            raise ValueError(msg)
        if not (-180 <= self.longitude <= 180):
            msg = f"longitude must be between -180 and 180, got {self.longitude}"
            raise ValueError(msg)

    @property
    def formatted_address(self) -> str | None:
        """Single display line built from the parts, else the display name."""
        return best_address_line(self.address_parts, self.display_name)


class BaseReverseGeocoder(ABC):
    """Abstract reverse geocoder. All providers must implement this."""

    default_base_url: str = ""

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        user_agent: str = "fleet-geocoder/1.0",
    ) -> None:
        self._base_url = (base_url or self.default_base_url).rstrip("/")
        self._api_key = api_key or ""
        self._user_agent = user_agent

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique name identifying this provider."""

    @property
    def requires_api_key(self) -> bool:
        """Whether this provider requires an API key to function."""
        return False

    @property
    def is_configured(self) -> bool:
        """Whether this provider has all required configuration (e.g., API keys)."""
        return not self.requires_api_key or bool(self._api_key)

    @property
    def base_url(self) -> str:
        return self._base_url

    @abstractmethod
    def build_request(
        self,
        lat: float,
        lng: float,
        *,
        zoom: int = DEFAULT_ZOOM,
        address_details: bool = True,
    ) -> ProviderRequest:
        """Build the reverse-lookup request for a coordinate pair.

        Args:
            lat: Latitude.
            lng: Longitude.
            zoom: Level of detail (18 is building level).
            address_details: Ask for the structured address breakdown.

        Returns:
            The request to send.
        """

    @abstractmethod
    def parse_response(self, data: Any, lat: float, lng: float) -> ReverseGeocodeResult | None:
        """Parse a decoded JSON body.

        Args:
            data: Decoded JSON from the provider.
            lat: Latitude that was requested (fallback when the
                provider omits the snapped point).
            lng: Longitude that was requested.

        Returns:
            ReverseGeocodeResult, or None when the provider found nothing.

        Raises:
            ProviderPermanentError: If the body cannot be interpreted.
        """

    def _default_headers(self) -> dict[str, str]:
        return {"User-Agent": self._user_agent, "Accept": "application/json"}

    def _join(self, path: str) -> str:
        """Join ``path`` onto the base URL unless the base already ends with it."""
        target = path.strip("/")
        if self._base_url.lower().endswith(f"/{target.lower()}"):
            return self._base_url
        return f"{self._base_url}/{target}"

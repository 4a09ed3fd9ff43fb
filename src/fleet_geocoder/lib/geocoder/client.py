"""Rate-limited, retrying HTTP client for reverse-geocoding providers.

Every lookup in the process goes through one :class:`ProviderClient`, which
owns the global :class:`LookupLimiter`. Only transient HTTP statuses are
retried here, with short fixed delays; anything slower to recover (outages,
timeouts) is left to the queue's backoff schedule.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence

import httpx
from loguru import logger

from fleet_geocoder.lib.geocoder.base import DEFAULT_ZOOM, BaseReverseGeocoder, ReverseGeocodeResult
from fleet_geocoder.lib.geocoder.errors import (
    TRANSIENT_STATUS_CODES,
    CoordinateValidationError,
    GeocodingProviderError,
    ProviderPermanentError,
    ProviderTransientError,
    provider_error_for_status,
)
from fleet_geocoder.lib.geocoder.grid import is_geocodable
from fleet_geocoder.lib.geocoder.limiter import LookupLimiter

DEFAULT_TIMEOUT = 8.0
# Delay before each inline retry; its length is the inline retry budget
DEFAULT_RETRY_DELAYS: tuple[float, ...] = (0.3, 0.8, 1.5)


class ProviderClient:
    """Resolve coordinates to addresses through one configured provider.

    Args:
        geocoder: Provider backend that builds requests and parses responses.
        limiter: Shared limiter; a default 3-concurrent / 1 qps limiter is
            created when omitted.
        http_client: Optional ``httpx.AsyncClient`` (injected in tests).
            When omitted the client creates and owns one.
        timeout: Per-request timeout in seconds. The request is cancelled
            when it elapses.
        zoom: Zoom level sent to the provider.
        retry_delays: Delays in seconds before each inline retry of a
            429/503/504 response.
        sleep: Awaitable sleep used between retries (patched in tests).
    """

    def __init__(
        self,
        geocoder: BaseReverseGeocoder,
        *,
        limiter: LookupLimiter | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_TIMEOUT,
        zoom: int = DEFAULT_ZOOM,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._geocoder = geocoder
        self._limiter = limiter or LookupLimiter()
        self._http = http_client
        self._owns_http = http_client is None
        self._timeout = timeout
        self._zoom = zoom
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self.lookups_started = 0

    @property
    def provider_name(self) -> str:
        return self._geocoder.provider_name

    @property
    def max_inline_retries(self) -> int:
        return len(self._retry_delays)

    async def resolve(self, lat: float, lng: float) -> ReverseGeocodeResult:
        """Reverse-geocode a coordinate pair.

        Args:
            lat: Latitude.
            lng: Longitude.

        Returns:
            The normalized result.

        Raises:
            CoordinateValidationError: For non-finite or (0, 0) coordinates.
            ProviderTransientError: When transient statuses outlast the
                inline retries, or on timeout/connection failure.
            ProviderPermanentError: On other error statuses or an unusable
                response.
        """
        if not is_geocodable(lat, lng):
            msg = f"Coordinates are not geocodable: ({lat}, {lng})"
            raise CoordinateValidationError(msg)

        return await self._limiter.run(lambda: self._fetch_with_retry(float(lat), float(lng)))

    async def _fetch_with_retry(self, lat: float, lng: float) -> ReverseGeocodeResult:
        attempt = 0
        while True:
            try:
                return await self._fetch(lat, lng)
            except ProviderTransientError as e:
                if e.status_code not in TRANSIENT_STATUS_CODES or attempt >= len(self._retry_delays):
                    raise
                delay = self._retry_delays[attempt]
                attempt += 1
                logger.debug(
                    f"{self.provider_name} returned HTTP {e.status_code}, "
                    f"inline retry {attempt}/{len(self._retry_delays)} in {delay}s"
                )
                await self._sleep(delay)

    async def _fetch(self, lat: float, lng: float) -> ReverseGeocodeResult:
        provider = self.provider_name
        request = self._geocoder.build_request(lat, lng, zoom=self._zoom, address_details=True)
        client = self._get_http_client()
        self.lookups_started += 1

        try:
            async with asyncio.timeout(self._timeout):
                response = await client.get(request.url, params=request.params, headers=request.headers)
        except (TimeoutError, httpx.TimeoutException) as e:
            logger.warning(f"{provider} reverse lookup timed out after {self._timeout}s")
            raise ProviderTransientError(provider, "Geocoding request timed out") from e
        except httpx.TransportError as e:
            logger.warning(f"{provider} reverse lookup connection error: {e}")
            raise ProviderTransientError(provider, "Connection to geocoding provider failed") from e

        if not response.is_success:
            logger.warning(f"{provider} reverse lookup HTTP error {response.status_code}")
            raise provider_error_for_status(provider, response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise ProviderPermanentError(provider, "Provider returned a non-JSON body") from e

        try:
            result = self._geocoder.parse_response(data, lat, lng)
        except GeocodingProviderError:
            raise
        except ValueError as e:
            raise ProviderPermanentError(provider, f"Failed to parse response: {e}") from e

        if result is None or not result.formatted_address:
            raise ProviderPermanentError(provider, "No address found for coordinates")
        return result

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(timeout=self._timeout)
            self._owns_http = True
        return self._http

    def status(self) -> dict[str, object]:
        """Provider name, limiter state, and lookup counters."""
        return {
            "provider": self.provider_name,
            "lookups_started": self.lookups_started,
            "limiter": self._limiter.status(),
        }

    async def aclose(self) -> None:
        """Close the HTTP client if this instance created it."""
        if self._http is not None and self._owns_http:
            await self._http.aclose()
            self._http = None

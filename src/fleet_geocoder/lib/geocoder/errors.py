"""Error taxonomy for the reverse-geocoding pipeline.

Provider failures are split by whether an immediate retry can help:
transient statuses (429/503/504, timeouts, connection errors) versus
everything else. Both still reach the queue layer, which applies the
backoff schedule.
"""

TRANSIENT_STATUS_CODES: frozenset[int] = frozenset({429, 503, 504})


class GeocodePipelineError(Exception):
    """Base class for all pipeline errors."""


class CoordinateValidationError(GeocodePipelineError, ValueError):
    """Raised for non-finite or null-island (0, 0) coordinates."""


class GeocodingProviderError(GeocodePipelineError):
    """Raised when a geocoding provider experiences a transport or service error.

    Args:
        provider_name: Name of the failing provider.
        message: Human-readable error description.
        status_code: Optional HTTP status code from the provider.
    """

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.message = message
        self.status_code = status_code
        super().__init__(f"{provider_name}: {message}")


class ProviderTransientError(GeocodingProviderError):
    """Rate limiting, gateway errors, timeouts, and dropped connections."""


class ProviderPermanentError(GeocodingProviderError):
    """Any other error status, or a response that cannot be used."""


class BackendUnavailableError(GeocodePipelineError):
    """The durable queue broker could not be reached."""


class ExhaustedRetriesError(GeocodePipelineError):
    """A geocode job failed on its last allowed attempt.

    Args:
        grid_key: Grid cell of the job.
        device_id: Device that produced the positions, if known.
        position_ids: Every position id merged into the job.
        attempts: Attempts made before giving up.
        cause: The error from the final attempt.
    """

    def __init__(
        self,
        grid_key: str | None,
        device_id: str | int | None,
        position_ids: list[str],
        attempts: int,
        cause: BaseException | None = None,
    ) -> None:
        self.grid_key = grid_key
        self.device_id = device_id
        self.position_ids = position_ids
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"geocode job for {grid_key} failed after {attempts} attempt(s): {cause}")


def provider_error_for_status(provider_name: str, status_code: int) -> GeocodingProviderError:
    """Build the error class matching an HTTP error status."""
    message = f"Provider returned HTTP {status_code}"
    if status_code in TRANSIENT_STATUS_CODES:
        return ProviderTransientError(provider_name, message, status_code=status_code)
    return ProviderPermanentError(provider_name, message, status_code=status_code)

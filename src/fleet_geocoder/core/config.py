"""Application configuration via Pydantic Settings.

All configuration is loaded from environment variables following 12-factor principles.
"""

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_SUPPORTED_PROVIDERS = ("nominatim", "photon", "google")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Database (position store + persisted geocode cache)
    database_url: str = Field(
        default="sqlite+aiosqlite:///./fleet_geocoder.db",
        description="Async SQLAlchemy connection string for the position store and geocode cache",
    )

    # Queue broker
    redis_url: str = Field(
        default="redis://127.0.0.1:6379/0",
        description="Redis URL for the durable geocode job queue",
    )
    geocode_queue_disabled: bool = Field(
        default=False,
        description="Force the in-memory queue backend (local and test runs)",
    )
    geocode_queue_prefix: str = Field(
        default="geocode",
        description="Key prefix for geocode jobs stored in Redis",
        min_length=1,
    )
    geocode_job_lease_ms: int = Field(
        default=60_000,
        description="Lease on a claimed Redis job; a job not renewed within it is requeued",
        gt=0,
    )

    # Provider
    geocoder_provider: str = Field(
        default="nominatim",
        description="Reverse geocoding provider (nominatim, photon, google)",
    )
    geocoder_api_key: str | None = Field(
        default=None,
        description="API key for providers that require one",
    )
    geocoder_base_url: str | None = Field(
        default=None,
        description="Override the provider base URL (self-hosted Nominatim/Photon)",
    )
    geocoder_user_agent: str = Field(
        default="fleet-geocoder/1.0",
        description="User-Agent sent to the provider (required by the Nominatim usage policy)",
    )
    geocoder_qps: float = Field(
        default=1.0,
        description="Maximum outbound lookups started per second",
        gt=0,
    )
    geocoder_max_concurrent: int = Field(
        default=3,
        description="Maximum in-flight outbound lookups",
        gt=0,
    )
    geocoder_timeout_ms: int = Field(
        default=8000,
        description="Provider request timeout in milliseconds",
        gt=0,
    )
    geocoder_zoom: int = Field(
        default=18,
        description="Zoom level sent with reverse lookups",
        ge=0,
        le=18,
    )

    # Pipeline
    geocode_pipeline_enabled: bool = Field(
        default=True,
        description="Start the worker pool and monitor loops with the API server",
    )
    geocode_grid_precision: int = Field(
        default=4,
        description="Decimal digits kept when building grid keys (4 is roughly 11 m)",
        ge=0,
        le=8,
    )
    geocode_backoff_ms: str = Field(
        default="60000,300000,900000,3600000",
        description="Comma-separated retry delays in milliseconds, indexed by attempt",
    )
    geocode_max_attempts: int | None = Field(
        default=None,
        description="Total attempts per job (defaults to len(backoff) + 1)",
        gt=0,
    )
    geocode_worker_concurrency: int = Field(
        default=3,
        description="Jobs processed concurrently by the worker pool",
        gt=0,
    )
    geocode_reuse_distance_meters: float = Field(
        default=25.0,
        description="Reuse the device's last resolved address within this distance (0 disables)",
        ge=0,
    )

    # Monitor
    geocode_scan_interval_ms: int = Field(
        default=60_000,
        description="Milliseconds between scans for unresolved positions (0 disables)",
        ge=0,
    )
    geocode_scan_lookback_minutes: int = Field(
        default=120,
        description="Only positions fixed within this many minutes are scanned",
        gt=0,
    )
    geocode_scan_batch: int = Field(
        default=500,
        description="Maximum positions selected per scan pass",
        gt=0,
    )
    geocode_retry_interval_ms: int = Field(
        default=6 * 60 * 60 * 1000,
        description="Milliseconds between retry passes over FAILED positions (0 disables)",
        ge=0,
    )
    geocode_retry_lookback_minutes: int = Field(
        default=24 * 60,
        description="Only FAILED positions fixed within this many minutes are retried",
        gt=0,
    )
    geocode_retry_backoff_minutes: int = Field(
        default=60,
        description="FAILED positions updated more recently than this are skipped",
        ge=0,
    )
    geocode_pending_backoff_minutes: int = Field(
        default=2,
        description="PENDING positions updated more recently than this are skipped",
        ge=0,
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level",
    )
    log_dir: str | None = Field(
        default=None,
        description="Directory for log files (enables file logging with 24h rotation when set)",
    )

    # API
    api_v1_prefix: str = Field(
        default="/api/v1",
        description="API version prefix",
    )

    @field_validator("geocoder_provider")
    @classmethod
    def validate_geocoder_provider(cls, v: str) -> str:
        name = v.strip().lower()
        if name not in _SUPPORTED_PROVIDERS:
            msg = f"geocoder_provider must be one of {', '.join(_SUPPORTED_PROVIDERS)}"
            raise ValueError(msg)
        return name

    @field_validator("geocode_backoff_ms")
    @classmethod
    def validate_geocode_backoff_ms(cls, v: str) -> str:
        parts = [p.strip() for p in v.split(",") if p.strip()]
        if not parts:
            msg = "geocode_backoff_ms must contain at least one delay"
            raise ValueError(msg)
        for part in parts:
            if not part.isdigit():
                msg = f"geocode_backoff_ms entries must be non-negative integers, got {part!r}"
                raise ValueError(msg)
        return ",".join(parts)

    @property
    def geocode_backoff_ms_list(self) -> list[int]:
        """Parse the backoff string into a list of millisecond delays."""
        return [int(p) for p in self.geocode_backoff_ms.split(",")]

    @property
    def geocoder_timeout_seconds(self) -> float:
        """Provider timeout in seconds, as httpx expects it."""
        return self.geocoder_timeout_ms / 1000


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()

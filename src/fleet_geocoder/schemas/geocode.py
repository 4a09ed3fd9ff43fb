"""Pydantic v2 schemas for the geocode pipeline endpoints."""

from typing import Any, Literal

from pydantic import BaseModel, Field, model_validator


class GeocodeJobRequest(BaseModel):
    """Request to enqueue positions for reverse geocoding."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    position_id: str | int | None = None
    position_ids: list[str | int] = Field(default_factory=list, max_length=10_000)
    device_id: int | str | None = None
    priority: Literal["normal", "high"] = "normal"
    reason: Literal["auto_scan", "retry_failed", "manual", "warm_fill", "backfill"] = "manual"
    delay_ms: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def reject_null_island(self) -> "GeocodeJobRequest":
        if self.latitude == 0 and self.longitude == 0:
            msg = "Coordinates (0, 0) are not geocodable"
            raise ValueError(msg)
        return self


class GeocodeJobResponse(BaseModel):
    """Response schema for an accepted geocode job."""

    job_id: str
    grid_key: str
    position_ids: list[str]
    priority: str
    reason: str
    state: str
    attempts_made: int
    queue_driver: str


class GeocodeStatusResponse(BaseModel):
    """Pipeline status snapshot."""

    initialized: bool
    queue: dict[str, Any] | None = None
    cache: dict[str, int] | None = None
    provider: dict[str, Any] | None = None
    worker: dict[str, Any] | None = None
    monitor: dict[str, Any] | None = None

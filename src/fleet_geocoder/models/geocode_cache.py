"""GeocodeCacheEntry model: resolved addresses keyed by grid cell."""

from datetime import datetime

from sqlalchemy import DateTime, Double, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from fleet_geocoder.models.base import Base, JSONType


class GeocodeCacheEntry(Base):
    """Cached reverse-geocoding result for one grid cell."""

    __tablename__ = "geocode_cache"

    key: Mapped[str] = mapped_column(String(64), primary_key=True)
    latitude: Mapped[float] = mapped_column(Double, nullable=False)
    longitude: Mapped[float] = mapped_column(Double, nullable=False)

    # Normalized address fields
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    formatted_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    street: Mapped[str | None] = mapped_column(String(255), nullable=True)
    house_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    neighbourhood: Mapped[str | None] = mapped_column(String(255), nullable=True)
    city: Mapped[str | None] = mapped_column(String(255), nullable=True)
    state: Mapped[str | None] = mapped_column(String(255), nullable=True)
    postal_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)

    provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    raw_response: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    hits_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

"""Position model: device fixes whose addresses the pipeline resolves."""

import enum
from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Double, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from fleet_geocoder.models.base import Base


class AddressStatus(enum.StrEnum):
    """Reverse-geocoding state of a position.

    ``None`` in the column means the position was never submitted.
    """

    PENDING = "PENDING"
    FAILED = "FAILED"
    RESOLVED = "RESOLVED"


class Position(Base):
    """A raw device position owned by the ingestion side of the platform."""

    __tablename__ = "positions"

    # SQLite only autoincrements INTEGER primary keys
    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer(), "sqlite"), primary_key=True)
    device_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True, index=True)
    fix_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    latitude: Mapped[float] = mapped_column(Double, nullable=False)
    longitude: Mapped[float] = mapped_column(Double, nullable=False)

    full_address: Mapped[str | None] = mapped_column(Text, nullable=True)
    address_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    address_provider: Mapped[str | None] = mapped_column(String(50), nullable=True)
    address_updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    address_error: Mapped[str | None] = mapped_column(String(200), nullable=True)

    __table_args__ = (Index("ix_positions_address_status_fix_time", "address_status", "fix_time"),)

"""ORM model registry: import all models so Alembic autogenerate discovers them."""

from fleet_geocoder.models.base import Base
from fleet_geocoder.models.geocode_cache import GeocodeCacheEntry
from fleet_geocoder.models.position import AddressStatus, Position

__all__ = [
    "AddressStatus",
    "Base",
    "GeocodeCacheEntry",
    "Position",
]

"""Grid keys: coalesce nearby coordinates into one deterministic cell id."""

import math
from typing import Any

DEFAULT_PRECISION = 4


def normalize_coordinate(value: Any, precision: int = DEFAULT_PRECISION) -> float | None:
    """Round a coordinate to ``precision`` decimal digits.

    Args:
        value: A number or numeric string.
        precision: Decimal digits to keep.

    Returns:
        The rounded float, or None if the value is not a finite number.
    """
    if isinstance(value, bool) or value is None:
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    rounded = round(number, precision)
    # Avoid "-0.0" producing a different key than "0.0"
    return rounded + 0.0


def build_grid_key(lat: Any, lng: Any, precision: int = DEFAULT_PRECISION) -> str | None:
    """Build the grid key for a coordinate pair.

    Args:
        lat: Latitude.
        lng: Longitude.
        precision: Decimal digits kept per coordinate (4 is roughly 11 m).

    Returns:
        ``"{lat},{lng}"`` using the rounded values, or None if either
        coordinate is not finite.

    Example:
        >>> build_grid_key(-23.55052, -46.633308)
        '-23.5505,-46.6333'
    """
    norm_lat = normalize_coordinate(lat, precision)
    norm_lng = normalize_coordinate(lng, precision)
    if norm_lat is None or norm_lng is None:
        return None
    return f"{_format(norm_lat)},{_format(norm_lng)}"


def is_geocodable(lat: Any, lng: Any) -> bool:
    """Whether a coordinate pair is finite and not the (0, 0) placeholder."""
    norm_lat = normalize_coordinate(lat, precision=12)
    norm_lng = normalize_coordinate(lng, precision=12)
    if norm_lat is None or norm_lng is None:
        return False
    return not (norm_lat == 0 and norm_lng == 0)


def _format(value: float) -> str:
    if value.is_integer():
        return str(int(value))
    return repr(value)

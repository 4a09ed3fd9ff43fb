"""Address normalization and formatting for reverse-geocoding results.

Providers return differently named fields (``road`` vs ``street``,
``town`` vs ``city``...). Everything is reduced to :class:`AddressParts`
and rendered as a single display line:

    ``{street}, {number} - {neighbourhood} {city}-{state}, {postal code}``
"""

import re
from dataclasses import asdict, dataclass
from typing import Any

_WHITESPACE_RE = re.compile(r"\s+")
_TRAILING_COUNTRY_RE = re.compile(r"(,|\s+-)\s*(brasil|brazil)$", re.IGNORECASE)

_STREET_KEYS = ("road", "street", "residential", "pedestrian", "cycleway", "footway", "highway", "route")
_NEIGHBOURHOOD_KEYS = ("neighbourhood", "suburb", "quarter", "district")
_CITY_KEYS = ("city", "town", "village", "municipality")
_STATE_KEYS = ("state", "region", "state_district")
_POSTAL_KEYS = ("postcode", "postal_code", "zipcode")
_HOUSE_NUMBER_KEYS = ("house_number", "housenumber", "house", "number")


@dataclass(frozen=True)
class AddressParts:
    """Normalized subset of provider address fields."""

    street: str | None = None
    house_number: str | None = None
    neighbourhood: str | None = None
    city: str | None = None
    state: str | None = None
    postal_code: str | None = None
    country: str | None = None
    country_code: str | None = None
    state_code: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        """Return the parts as a plain dict (for JSON payloads)."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AddressParts":
        """Rebuild parts from :meth:`to_dict` output, ignoring unknown keys."""
        if not data:
            return cls()
        fields = cls.__dataclass_fields__
        return cls(**{k: _clean(v) for k, v in data.items() if k in fields})

    @property
    def is_empty(self) -> bool:
        return not any(asdict(self).values())


def collapse_whitespace(value: Any) -> str:
    """Collapse runs of whitespace and strip."""
    if value is None:
        return ""
    return _WHITESPACE_RE.sub(" ", str(value)).strip()


def _clean(value: Any) -> str | None:
    text = collapse_whitespace(value)
    return text or None


def _coalesce(details: dict[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        value = _clean(details.get(key))
        if value:
            return value
    return None


def normalize_postal_code(value: Any) -> str | None:
    """Format 8-digit CEP codes as ``00000-000``; pass anything else through."""
    text = _clean(value)
    if text is None:
        return None
    digits = re.sub(r"\D", "", text)
    if len(digits) == 8:
        return f"{digits[:5]}-{digits[5:]}"
    return text


def parts_from_provider(details: dict[str, Any] | None) -> AddressParts:
    """Normalize a provider ``address`` object into :class:`AddressParts`.

    Args:
        details: The structured address mapping returned by the provider
            (Nominatim ``address``, Photon ``properties``, or a dict built
            from Google ``address_components``).

    Returns:
        AddressParts with every unknown or blank field set to None.
    """
    details = details or {}
    country_code = _clean(details.get("country_code") or details.get("countrycode"))
    state_code = _clean(details.get("state_code"))
    iso_subdivision = _clean(details.get("ISO3166-2-lvl4"))
    if state_code is None and iso_subdivision and "-" in iso_subdivision:
        # Nominatim: "BR-SP" -> "SP"
        state_code = iso_subdivision.split("-", 1)[1]
    return AddressParts(
        street=_coalesce(details, _STREET_KEYS),
        house_number=_coalesce(details, _HOUSE_NUMBER_KEYS),
        neighbourhood=_coalesce(details, _NEIGHBOURHOOD_KEYS),
        city=_coalesce(details, _CITY_KEYS),
        state=_coalesce(details, _STATE_KEYS),
        postal_code=normalize_postal_code(_coalesce(details, _POSTAL_KEYS)),
        country=_clean(details.get("country")),
        country_code=country_code.upper() if country_code else None,
        state_code=state_code.upper() if state_code else None,
    )


def format_full_address(parts: AddressParts) -> str | None:
    """Render parts as one display line, or None if nothing usable is present."""
    house_number = parts.house_number or ("s/n" if parts.street else None)
    street_line = ", ".join(p for p in (parts.street, house_number) if p)
    state = (parts.state_code or parts.state or "").upper() or None
    city_state = "-".join(p for p in (parts.city, state) if p)

    formatted = street_line
    if parts.neighbourhood:
        formatted = f"{formatted} - {parts.neighbourhood}" if formatted else parts.neighbourhood
    if city_state:
        formatted = f"{formatted} {city_state}" if formatted else city_state
    if parts.postal_code:
        formatted = f"{formatted}, {parts.postal_code}" if formatted else parts.postal_code
    return collapse_whitespace(formatted) or None


def sanitize_display_name(value: Any) -> str | None:
    """Clean a provider display name (whitespace, doubled separators, country tail)."""
    cleaned = collapse_whitespace(value)
    if not cleaned:
        return None
    cleaned = _TRAILING_COUNTRY_RE.sub("", cleaned)
    cleaned = re.sub(r"\s*,\s*,+", ", ", cleaned)
    cleaned = re.sub(r"\s+-\s+-", " - ", cleaned)
    return collapse_whitespace(cleaned) or None


def best_address_line(parts: AddressParts, display_name: str | None) -> str | None:
    """Prefer the formatted parts line, falling back to the display name."""
    return format_full_address(parts) or sanitize_display_name(display_name)

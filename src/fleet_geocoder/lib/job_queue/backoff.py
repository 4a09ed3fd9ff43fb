"""Retry backoff schedule shared by both queue backends."""

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleet_geocoder.core.config import Settings

DEFAULT_BACKOFF_MS: tuple[int, ...] = (60_000, 300_000, 900_000, 3_600_000)


@dataclass(frozen=True)
class BackoffSchedule:
    """Ordered retry delays in milliseconds, indexed by failed attempt.

    The first failure waits ``delays_ms[0]``, the second ``delays_ms[1]``
    and so on; failures past the end of the list reuse the last delay.

    Example:
        >>> BackoffSchedule().delay_for(2)
        300000
        >>> BackoffSchedule().delay_for(9)
        3600000
    """

    delays_ms: tuple[int, ...] = DEFAULT_BACKOFF_MS

    def __post_init__(self) -> None:
        if not self.delays_ms:
            msg = "BackoffSchedule needs at least one delay"
            raise ValueError(msg)
        if any(d < 0 for d in self.delays_ms):
            msg = f"Backoff delays must be non-negative, got {self.delays_ms}"
            raise ValueError(msg)

    @property
    def max_attempts(self) -> int:
        """Default attempt budget: one initial try plus one per delay."""
        return len(self.delays_ms) + 1

    def delay_for(self, attempt: int) -> int:
        """Delay in milliseconds after the ``attempt``-th failure (1-based)."""
        index = min(max(attempt, 1), len(self.delays_ms)) - 1
        return self.delays_ms[index]

    def delay_seconds_for(self, attempt: int) -> float:
        return self.delay_for(attempt) / 1000

    def to_list(self) -> list[int]:
        return list(self.delays_ms)

    @classmethod
    def from_list(cls, delays: list[int] | tuple[int, ...] | None) -> "BackoffSchedule":
        if not delays:
            return cls()
        return cls(tuple(int(d) for d in delays))

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BackoffSchedule":
        return cls(tuple(settings.geocode_backoff_ms_list))

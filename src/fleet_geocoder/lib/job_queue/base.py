"""Queue backend contract and the geocode job payload.

Two strategies implement :class:`QueueBackend`: a Redis-backed durable
queue and an in-process memory queue. Callers never need to know which
one is active; the durable backend degrades to the memory one on its own.
"""

import enum
import uuid
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from fleet_geocoder.lib.job_queue.backoff import BackoffSchedule


class Priority(enum.StrEnum):
    """Job priority. High-priority jobs are dispatched first."""

    NORMAL = "normal"
    HIGH = "high"


# Lower rank runs first
PRIORITY_RANK: dict[str, int] = {Priority.HIGH: 1, Priority.NORMAL: 5}


class JobReason(enum.StrEnum):
    """Why a geocode job was submitted."""

    AUTO_SCAN = "auto_scan"
    RETRY_FAILED = "retry_failed"
    MANUAL = "manual"
    WARM_FILL = "warm_fill"
    BACKFILL = "backfill"


class JobState(enum.StrEnum):
    """Lifecycle state of a queued job."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


def priority_rank(priority: str) -> int:
    return PRIORITY_RANK.get(priority, PRIORITY_RANK[Priority.NORMAL])


def merge_position_ids(existing: Iterable[Any], incoming: Iterable[Any]) -> list[str]:
    """Set-union two id collections as strings, keeping first-seen order."""
    merged: dict[str, None] = {}
    for value in (*existing, *incoming):
        if value is None or value == "":
            continue
        merged[str(value)] = None
    return list(merged)


def unhandled_position_ids(current: Iterable[Any], handled: Iterable[Any] | None) -> list[str]:
    """Ids in ``current`` that are not in ``handled``.

    ``handled`` of None means the processor did not report its ids, so
    every id counts as handled.
    """
    if handled is None:
        return []
    done = set(merge_position_ids([], handled))
    return [position_id for position_id in merge_position_ids([], current) if position_id not in done]


@dataclass
class GeocodeJobData:
    """Payload of a geocode job: one grid cell and every position in it."""

    grid_key: str
    lat: float
    lng: float
    position_ids: list[str] = field(default_factory=list)
    device_id: int | str | None = None
    reason: str = JobReason.MANUAL
    priority: str = Priority.NORMAL
    created_at: str = field(default_factory=lambda: datetime.now(UTC).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "grid_key": self.grid_key,
            "lat": self.lat,
            "lng": self.lng,
            "position_ids": list(self.position_ids),
            "device_id": self.device_id,
            "reason": str(self.reason),
            "priority": str(self.priority),
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "GeocodeJobData":
        return cls(
            grid_key=data["grid_key"],
            lat=float(data["lat"]),
            lng=float(data["lng"]),
            position_ids=merge_position_ids([], data.get("position_ids") or []),
            device_id=data.get("device_id"),
            reason=data.get("reason", JobReason.MANUAL),
            priority=data.get("priority", Priority.NORMAL),
            created_at=data.get("created_at") or datetime.now(UTC).isoformat(),
        )

    def merged(self, patch: dict[str, Any]) -> "GeocodeJobData":
        """Return a copy with ``patch`` shallow-merged in.

        ``position_ids`` is set-unioned with the existing ids, never
        replaced, so a pending job's id set only grows.
        """
        data = self.to_dict()
        for key, value in patch.items():
            if key == "position_ids":
                data["position_ids"] = merge_position_ids(data["position_ids"], value or [])
            elif key in data:
                data[key] = value
        return GeocodeJobData.from_dict(data)

    def with_position_ids(self, position_ids: Iterable[Any]) -> "GeocodeJobData":
        """Copy of this payload carrying exactly ``position_ids``."""
        return replace(self, position_ids=merge_position_ids([], position_ids))


@dataclass
class JobOptions:
    """Scheduling options for a job.

    Args:
        priority: Dispatch priority.
        delay_ms: Delay before the job first becomes ready.
        attempts: Total attempts allowed; defaults to the backoff's budget.
        backoff: Delays applied between failed attempts.
    """

    priority: str = Priority.NORMAL
    delay_ms: int = 0
    attempts: int | None = None
    backoff: BackoffSchedule = field(default_factory=BackoffSchedule)

    def __post_init__(self) -> None:
        if self.attempts is None:
            self.attempts = self.backoff.max_attempts
        if self.attempts < 1:
            msg = f"attempts must be at least 1, got {self.attempts}"
            raise ValueError(msg)

    def to_dict(self) -> dict[str, Any]:
        return {
            "priority": str(self.priority),
            "delay_ms": self.delay_ms,
            "attempts": self.attempts,
            "backoff": self.backoff.to_list(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobOptions":
        return cls(
            priority=data.get("priority", Priority.NORMAL),
            delay_ms=int(data.get("delay_ms", 0)),
            attempts=data.get("attempts"),
            backoff=BackoffSchedule.from_list(data.get("backoff")),
        )


@dataclass
class JobHandle:
    """A job as seen by producers and processors.

    ``processed_ids`` is set by the processor to the ids it wrote. It is
    never persisted; backends use it on completion to keep ids merged
    while the job ran.
    """

    id: str
    data: GeocodeJobData
    options: JobOptions
    attempts_made: int = 0
    state: str = JobState.WAITING
    last_error: str | None = None
    processed_ids: list[str] | None = field(default=None, compare=False)

    @property
    def is_last_attempt(self) -> bool:
        """Whether a failure of the current attempt exhausts the job."""
        return self.attempts_made + 1 >= (self.options.attempts or 1)

    def carry_over(self, handled: Iterable[Any] | None) -> bool:
        """Reset the job to a fresh run over the ids not in ``handled``.

        Returns:
            True if ids were left and the job was reset, False if nothing
            is left and the job can be dropped.
        """
        leftover = unhandled_position_ids(self.data.position_ids, handled)
        if not leftover:
            return False
        self.data = self.data.with_position_ids(leftover)
        self.attempts_made = 0
        self.last_error = None
        self.state = JobState.WAITING
        self.processed_ids = None
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "data": self.data.to_dict(),
            "options": self.options.to_dict(),
            "attempts_made": self.attempts_made,
            "state": str(self.state),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobHandle":
        return cls(
            id=data["id"],
            data=GeocodeJobData.from_dict(data["data"]),
            options=JobOptions.from_dict(data.get("options") or {}),
            attempts_made=int(data.get("attempts_made", 0)),
            state=data.get("state", JobState.WAITING),
            last_error=data.get("last_error"),
        )


def new_job_id() -> str:
    return str(uuid.uuid4())


Processor = Callable[[JobHandle], Awaitable[Any]]
StopProcessor = Callable[[], Awaitable[None]]


class QueueBackend(ABC):
    """Abstract job queue. Both backends must implement this."""

    @property
    @abstractmethod
    def driver(self) -> str:
        """``"redis"`` or ``"memory"``: the strategy currently in effect."""

    @abstractmethod
    async def add(self, job_id: str | None, payload: GeocodeJobData, options: JobOptions) -> JobHandle:
        """Add a job.

        Args:
            job_id: Deterministic id, or None to generate one.
            payload: Job data.
            options: Scheduling options.

        Returns:
            The new handle, or the existing handle unchanged if a job with
            this id is already queued.
        """

    @abstractmethod
    async def get_job(self, job_id: str) -> JobHandle | None:
        """Return the queued job with this id, or None."""

    @abstractmethod
    async def update(self, handle: JobHandle, patch: dict[str, Any]) -> JobHandle:
        """Shallow-merge ``patch`` into the job data (``position_ids`` is unioned).

        If the job finished before the merge landed, a new job with the
        same id is created for the patched ids, so a merge is never lost.

        Returns:
            The updated handle.
        """

    @abstractmethod
    async def register_processor(self, processor: Processor, concurrency: int = 1) -> StopProcessor:
        """Start consuming jobs with ``processor``.

        A processor that returns completes the job; one that raises fails
        the attempt and the job is rescheduled with its backoff until its
        attempts are used up.

        Ids merged into the job while it ran, and not listed in the
        handle's ``processed_ids``, are run again as a fresh job.

        Returns:
            An async callable that stops consumption.
        """

    @abstractmethod
    async def close(self) -> None:
        """Stop all consumers and release resources."""

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        """Job counts by state plus the driver name."""

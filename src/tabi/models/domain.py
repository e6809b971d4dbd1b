"""Domain models for destinations, schedule events and pending mutations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone
from enum import Enum
from typing import Any, Optional

from ..services.errors import ValidationError


class TravelMode(str, Enum):
    DRIVING = "driving"
    WALKING = "walking"
    CYCLING = "cycling"


class EventState(str, Enum):
    PROPOSED = "proposed"
    SCHEDULED = "scheduled"
    CONFLICTED = "conflicted"
    CANCELLED = "cancelled"


class MutationKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Fields a schedule mutation may change; state and version are owned by the engine.
EVENT_MUTABLE_FIELDS = ("title", "start", "end", "all_day", "destination_id", "overlap_allowed")


def as_utc(value: datetime) -> datetime:
    """Event instants are kept as naive UTC; offset-aware input is converted."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def coerce_event_field(name: str, value: Any) -> Any:
    """Normalize a payload or stored candidate value for one event field."""
    if name not in EVENT_MUTABLE_FIELDS:
        raise ValidationError(f"Unknown or read-only event field: {name}")
    if name in ("start", "end"):
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError as exc:
                raise ValidationError(f"Field '{name}' is not an ISO datetime: {value!r}") from exc
        if not isinstance(value, datetime):
            raise ValidationError(f"Field '{name}' must be a datetime, got {value!r}")
        return as_utc(value)
    if name in ("all_day", "overlap_allowed"):
        return bool(value)
    if name == "title":
        return "" if value is None else str(value)
    return None if value is None else str(value)


@dataclass(slots=True)
class Destination:
    """A place to visit within a plan. An anchor when ``fixed_date`` is set."""

    destination_id: str
    plan_id: str
    name: str
    latitude: float
    longitude: float
    category: Optional[str] = None
    fixed_date: Optional[date] = None
    fixed_time: Optional[time] = None
    visit_duration_min: int = 60
    order_index: Optional[int] = None

    @property
    def is_anchor(self) -> bool:
        return self.fixed_date is not None

    @property
    def coordinates(self) -> tuple[float, float]:
        return (self.latitude, self.longitude)


@dataclass(slots=True)
class ConflictDetail:
    """Both candidate values of a conflict, kept until a human resolves it."""

    reason: str
    fields: list[str]
    local: dict[str, Any]
    server: dict[str, Any]
    base_version: Optional[int] = None
    server_version: Optional[int] = None
    related_event_ids: list[str] = field(default_factory=list)


@dataclass(slots=True)
class ScheduleEvent:
    event_id: str
    plan_id: str
    start: datetime
    end: datetime
    title: str = ""
    destination_id: Optional[str] = None
    all_day: bool = False
    overlap_allowed: bool = False
    version: int = 1
    state: EventState = EventState.PROPOSED
    field_versions: dict[str, int] = field(default_factory=dict)
    conflict: Optional[ConflictDetail] = None

    def field_values(self, names=EVENT_MUTABLE_FIELDS) -> dict[str, Any]:
        return {name: getattr(self, name) for name in names}


@dataclass(slots=True)
class PendingMutation:
    """A schedule mutation recorded on a device, possibly while offline."""

    idempotency_key: str
    op_kind: MutationKind
    plan_id: str
    target_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    base_version: Optional[int] = None
    client_timestamp: Optional[datetime] = None
    device_id: Optional[str] = None
    local_id: Optional[int] = None

"""Schedule event schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from ..models.domain import ConflictDetail, ScheduleEvent
from ..persistence.serializers import encode_value


class ConflictModel(BaseModel):
    reason: str
    fields: List[str]
    local: Dict[str, Any]
    server: Dict[str, Any]
    base_version: Optional[int] = None
    server_version: Optional[int] = None
    related_event_ids: List[str] = Field(default_factory=list)

    @classmethod
    def from_domain(cls, conflict: ConflictDetail) -> "ConflictModel":
        return cls(
            reason=conflict.reason,
            fields=list(conflict.fields),
            local=encode_value(conflict.local),
            server=encode_value(conflict.server),
            base_version=conflict.base_version,
            server_version=conflict.server_version,
            related_event_ids=list(conflict.related_event_ids),
        )


class EventModel(BaseModel):
    event_id: str
    plan_id: str
    title: str
    destination_id: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool
    overlap_allowed: bool
    version: int
    state: str
    conflict: Optional[ConflictModel] = None

    @classmethod
    def from_domain(cls, event: ScheduleEvent) -> "EventModel":
        return cls(
            event_id=event.event_id,
            plan_id=event.plan_id,
            title=event.title,
            destination_id=event.destination_id,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            overlap_allowed=event.overlap_allowed,
            version=event.version,
            state=event.state.value,
            conflict=ConflictModel.from_domain(event.conflict) if event.conflict else None,
        )


class ScheduleRequest(BaseModel):
    start_date: date = Field(..., description="First day of the trip.")


class EventCreate(BaseModel):
    event_id: Optional[str] = None
    title: str = ""
    destination_id: Optional[str] = None
    start: datetime
    end: datetime
    all_day: bool = False
    overlap_allowed: bool = False
    force: bool = False


class EventEdit(BaseModel):
    start: datetime
    end: datetime
    force: bool = Field(default=False, description="Apply despite overlaps; displaced events become conflicted.")
    expected_version: Optional[int] = Field(default=None, ge=1)


class ForceRequest(BaseModel):
    force: bool = False


class ResolveRequest(BaseModel):
    choice: Literal["local", "server", "custom", "cancel"]
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    force: bool = False

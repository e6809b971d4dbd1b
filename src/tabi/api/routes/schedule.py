"""Schedule endpoints: proposals from the route and direct event edits."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status

from ...models.domain import EventState
from ...schemas.schedule import (
    EventCreate,
    EventEdit,
    EventModel,
    ForceRequest,
    ResolveRequest,
    ScheduleRequest,
)
from ...services.engine import PlanningEngine, get_engine
from ..errors import http_error

router = APIRouter(prefix="/plans/{plan_id}", tags=["schedule"])


@router.post("/schedule", response_model=List[EventModel], status_code=status.HTTP_200_OK)
def build_schedule(
    plan_id: str,
    payload: ScheduleRequest,
    engine: PlanningEngine = Depends(get_engine),
) -> List[EventModel]:
    """Lay the optimized route out as Proposed events starting on ``start_date``."""
    try:
        events = engine.build_schedule(plan_id, payload.start_date)
        return [EventModel.from_domain(event) for event in events]
    except Exception as exc:
        raise http_error(exc, "build schedule") from exc


@router.get("/events", response_model=List[EventModel], status_code=status.HTTP_200_OK)
def list_events(
    plan_id: str,
    state: Optional[EventState] = Query(default=None, description="Only events in this state"),
    engine: PlanningEngine = Depends(get_engine),
) -> List[EventModel]:
    try:
        return [EventModel.from_domain(event) for event in engine.list_events(plan_id, state)]
    except Exception as exc:
        raise http_error(exc, "list events") from exc


@router.post("/events", response_model=EventModel, status_code=status.HTTP_201_CREATED)
def create_event(plan_id: str, payload: EventCreate, engine: PlanningEngine = Depends(get_engine)) -> EventModel:
    try:
        event = engine.create_event(plan_id, **payload.model_dump())
        return EventModel.from_domain(event)
    except Exception as exc:
        raise http_error(exc, "create event") from exc


@router.patch("/events/{event_id}", response_model=EventModel, status_code=status.HTTP_200_OK)
def edit_event(
    plan_id: str,
    event_id: str,
    payload: EventEdit,
    engine: PlanningEngine = Depends(get_engine),
) -> EventModel:
    """Move an event. Overlaps answer 409 with the colliding ids unless ``force`` is set."""
    try:
        event = engine.edit_event(
            plan_id,
            event_id,
            payload.start,
            payload.end,
            force=payload.force,
            expected_version=payload.expected_version,
        )
        return EventModel.from_domain(event)
    except Exception as exc:
        raise http_error(exc, "edit event") from exc


@router.delete("/events/{event_id}", response_model=EventModel, status_code=status.HTTP_200_OK)
def delete_event(plan_id: str, event_id: str, engine: PlanningEngine = Depends(get_engine)) -> EventModel:
    try:
        return EventModel.from_domain(engine.delete_event(plan_id, event_id))
    except Exception as exc:
        raise http_error(exc, "delete event") from exc


@router.post("/events/{event_id}/confirm", response_model=EventModel, status_code=status.HTTP_200_OK)
def confirm_event(
    plan_id: str,
    event_id: str,
    payload: Optional[ForceRequest] = None,
    engine: PlanningEngine = Depends(get_engine),
) -> EventModel:
    try:
        event = engine.confirm_event(plan_id, event_id, force=bool(payload and payload.force))
        return EventModel.from_domain(event)
    except Exception as exc:
        raise http_error(exc, "confirm event") from exc


@router.post("/events/{event_id}/restore", response_model=EventModel, status_code=status.HTTP_200_OK)
def restore_event(
    plan_id: str,
    event_id: str,
    payload: Optional[ForceRequest] = None,
    engine: PlanningEngine = Depends(get_engine),
) -> EventModel:
    try:
        event = engine.restore_event(plan_id, event_id, force=bool(payload and payload.force))
        return EventModel.from_domain(event)
    except Exception as exc:
        raise http_error(exc, "restore event") from exc


@router.post("/events/{event_id}/resolve", response_model=EventModel, status_code=status.HTTP_200_OK)
def resolve_conflict(
    plan_id: str,
    event_id: str,
    payload: ResolveRequest,
    engine: PlanningEngine = Depends(get_engine),
) -> EventModel:
    try:
        event = engine.resolve_conflict(
            plan_id,
            event_id,
            payload.choice,
            start=payload.start,
            end=payload.end,
            force=payload.force,
        )
        return EventModel.from_domain(event)
    except Exception as exc:
        raise http_error(exc, "resolve conflict") from exc

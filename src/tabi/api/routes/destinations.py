"""Destination endpoints."""

from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends, status

from ...schemas.destinations import DestinationCreate, DestinationModel, DestinationUpdate
from ...schemas.schedule import EventModel
from ...services.engine import PlanningEngine, get_engine
from ..errors import http_error

router = APIRouter(prefix="/plans/{plan_id}/destinations", tags=["destinations"])


@router.get("", response_model=List[DestinationModel], status_code=status.HTTP_200_OK)
def list_destinations(plan_id: str, engine: PlanningEngine = Depends(get_engine)) -> List[DestinationModel]:
    """Destinations in their current visiting order."""
    try:
        return [DestinationModel.from_domain(d) for d in engine.list_destinations(plan_id)]
    except Exception as exc:
        raise http_error(exc, "list destinations") from exc


@router.post("", response_model=DestinationModel, status_code=status.HTTP_201_CREATED)
def add_destination(
    plan_id: str,
    payload: DestinationCreate,
    engine: PlanningEngine = Depends(get_engine),
) -> DestinationModel:
    try:
        destination = engine.add_destination(plan_id, **payload.model_dump())
        return DestinationModel.from_domain(destination)
    except Exception as exc:
        raise http_error(exc, "add destination") from exc


@router.patch("/{destination_id}", response_model=DestinationModel, status_code=status.HTTP_200_OK)
def update_destination(
    plan_id: str,
    destination_id: str,
    payload: DestinationUpdate,
    engine: PlanningEngine = Depends(get_engine),
) -> DestinationModel:
    """Change a destination. Moving it or changing its anchor cancels any running optimization."""
    try:
        destination = engine.update_destination(plan_id, destination_id, payload.model_dump(exclude_unset=True))
        return DestinationModel.from_domain(destination)
    except Exception as exc:
        raise http_error(exc, "update destination") from exc


@router.delete("/{destination_id}", status_code=status.HTTP_200_OK)
def remove_destination(plan_id: str, destination_id: str, engine: PlanningEngine = Depends(get_engine)) -> dict:
    try:
        cancelled = engine.remove_destination(plan_id, destination_id)
        return {
            "success": True,
            "message": f"Destination {destination_id} removed from plan {plan_id}",
            "cancelled_events": [EventModel.from_domain(event) for event in cancelled],
        }
    except Exception as exc:
        raise http_error(exc, "remove destination") from exc

"""Route optimization endpoints."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, status

from ...schemas.routing import RouteRequest, RouteResponse
from ...services.engine import PlanningEngine, get_engine
from ..errors import http_error

router = APIRouter(prefix="/plans/{plan_id}", tags=["routes"])


@router.post("/route", response_model=RouteResponse, status_code=status.HTTP_200_OK)
def compute_route(
    plan_id: str,
    payload: Optional[RouteRequest] = None,
    engine: PlanningEngine = Depends(get_engine),
) -> RouteResponse:
    """Optimize the visiting order of the plan and persist it.

    Legs the directions provider could not serve in time are haversine
    estimates flagged ``approximate``; the request still succeeds.
    """
    force = payload.force if payload is not None else False
    try:
        route = engine.compute_route(plan_id, force=force)
        return RouteResponse.from_route(plan_id, route)
    except Exception as exc:
        raise http_error(exc, "compute route") from exc

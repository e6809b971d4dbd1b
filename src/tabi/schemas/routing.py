"""Route computation schemas."""

from __future__ import annotations

from typing import List

from pydantic import BaseModel, Field

from ..services.routing.models import OptimizedRoute
from .destinations import DestinationModel


class RouteRequest(BaseModel):
    force: bool = Field(default=False, description="Recompute even if the destination set is unchanged.")


class RouteLegModel(BaseModel):
    from_id: str
    to_id: str
    distance_m: float
    duration_s: float
    approximate: bool = Field(default=False, description="True when the leg is a haversine estimate.")


class RouteResponse(BaseModel):
    plan_id: str
    ordered_destinations: List[DestinationModel]
    legs: List[RouteLegModel]
    total_distance_m: float
    total_duration_s: float
    metadata: dict

    @classmethod
    def from_route(cls, plan_id: str, route: OptimizedRoute) -> "RouteResponse":
        return cls(
            plan_id=plan_id,
            ordered_destinations=[DestinationModel.from_domain(d) for d in route.ordered],
            legs=[
                RouteLegModel(
                    from_id=leg.from_id,
                    to_id=leg.to_id,
                    distance_m=leg.distance_m,
                    duration_s=leg.duration_s,
                    approximate=leg.approximate,
                )
                for leg in route.legs
            ],
            total_distance_m=route.total_distance_m,
            total_duration_s=route.total_duration_s,
            metadata=route.metadata,
        )

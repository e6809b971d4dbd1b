"""Routing domain models."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

from ...models.domain import Destination


@dataclass(slots=True)
class RouteEdge:
    distance_m: float
    duration_s: float
    path: List[tuple[float, float]] = field(default_factory=list)
    approximate: bool = False
    mode: str = "driving"


@dataclass(slots=True)
class RouteLeg:
    from_id: str
    to_id: str
    distance_m: float
    duration_s: float
    approximate: bool


@dataclass(slots=True)
class OptimizedRoute:
    ordered: List[Destination]
    legs: List[RouteLeg]
    total_distance_m: float
    total_duration_s: float
    metadata: dict = field(default_factory=dict)

    @property
    def destination_ids(self) -> list[str]:
        return [destination.destination_id for destination in self.ordered]

    def leg_into(self, destination_id: str) -> RouteLeg | None:
        for leg in self.legs:
            if leg.to_id == destination_id:
                return leg
        return None

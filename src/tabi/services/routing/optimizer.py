"""Visiting-order optimization for a plan's destinations.

Anchors (destinations with a fixed date) are immovable checkpoints emitted in
chronological order. The non-anchored destinations between two anchors form a
segment that is solved on its own as an open path bounded by those anchors
(unbounded at the ends of the trip): nearest-neighbour construction followed by
best-improvement 2-opt passes. Every comparison is made on ``(cost, id sequence)``
so equal-cost alternatives resolve toward the lexicographically smaller ids and
the output is deterministic for identical input.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import time as dt_time
from typing import Iterable, Optional, Sequence

from ...config import settings
from ...models.domain import Destination
from ..errors import CapacityError, OptimizationCancelled, ValidationError
from .distance_cache import DistanceCache
from .models import OptimizedRoute, RouteEdge, RouteLeg

logger = logging.getLogger(__name__)

# Costs are compared at millimetre resolution so float noise never breaks ties.
_COST_DIGITS = 3


class CancellationToken:
    """Cooperative cancellation flag plus an optional wall-clock deadline."""

    def __init__(self, budget_seconds: float | None = None) -> None:
        self._event = threading.Event()
        self.deadline = time.monotonic() + budget_seconds if budget_seconds else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OptimizationCancelled("Destination set changed while optimizing; result abandoned.")


def sequence_order(destinations: Iterable[Destination]) -> list[Destination]:
    """Current visiting order: ``order_index`` first, unindexed ones last, then id."""
    return sorted(
        destinations,
        key=lambda d: (d.order_index is None, d.order_index if d.order_index is not None else 0, d.destination_id),
    )


def _anchor_key(destination: Destination) -> tuple:
    return (destination.fixed_date, destination.fixed_time or dt_time.min, destination.destination_id)


class _Segment:
    """Open-path sub-problem between two optional bounding anchors."""

    def __init__(self, nodes: list[str], start: Optional[str], end: Optional[str], cost: dict[tuple[str, str], float]):
        self.nodes = nodes
        self.start = start
        self.end = end
        self._cost = cost

    def path_cost(self, order: Sequence[str]) -> float:
        stops = ([self.start] if self.start else []) + list(order) + ([self.end] if self.end else [])
        return sum(self._cost[(a, b)] for a, b in zip(stops, stops[1:]))

    def rank(self, order: Sequence[str]) -> tuple[float, tuple[str, ...]]:
        return (round(self.path_cost(order), _COST_DIGITS), tuple(order))

    def nearest_neighbour(self, first: str, forward: bool = True) -> list[str]:
        order = [first]
        remaining = set(self.nodes) - {first}
        while remaining:
            current = order[-1]
            if forward:
                step = lambda node: (round(self._cost[(current, node)], _COST_DIGITS), node)
            else:
                step = lambda node: (round(self._cost[(node, current)], _COST_DIGITS), node)
            chosen = min(remaining, key=step)
            order.append(chosen)
            remaining.discard(chosen)
        return order if forward else order[::-1]

    def constructions(self, current_order: list[str]) -> list[list[str]]:
        candidates = [list(current_order)]
        if self.start is not None:
            first = min(self.nodes, key=lambda node: (round(self._cost[(self.start, node)], _COST_DIGITS), node))
            candidates.append(self.nearest_neighbour(first))
        elif self.end is not None:
            last = min(self.nodes, key=lambda node: (round(self._cost[(node, self.end)], _COST_DIGITS), node))
            candidates.append(self.nearest_neighbour(last, forward=False))
        else:
            # Unbounded: try every start, keep only the best tour for improvement.
            tours = [self.nearest_neighbour(node) for node in sorted(self.nodes)]
            candidates.append(min(tours, key=self.rank))
        return candidates


class RouteOptimizer:
    def __init__(
        self,
        cache: DistanceCache,
        *,
        mode: str = "driving",
        max_destinations: int | None = None,
        max_iterations: int | None = None,
        time_budget_seconds: float | None = None,
    ) -> None:
        self.cache = cache
        self.mode = mode
        self.max_destinations = max_destinations or settings.max_destinations_per_route
        self.max_iterations = max_iterations if max_iterations is not None else settings.two_opt_max_iterations
        self.time_budget_seconds = time_budget_seconds or settings.optimizer_time_budget_seconds

    def optimize(
        self,
        destinations: Sequence[Destination],
        anchors: Iterable[str] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> OptimizedRoute:
        """Order ``destinations``; ``anchors`` overrides which ids are fixed checkpoints."""
        ordered_input = sequence_order(destinations)
        ids = [destination.destination_id for destination in ordered_input]
        if len(set(ids)) != len(ids):
            raise ValidationError("Destination identifiers must be unique within a plan.")
        if len(ordered_input) > self.max_destinations:
            raise CapacityError(len(ordered_input), self.max_destinations)
        if len(ordered_input) < 2:
            return OptimizedRoute(
                ordered=list(ordered_input),
                legs=[],
                total_distance_m=0.0,
                total_duration_s=0.0,
                metadata={"status": "trivial", "segments": 0, "approximate_legs": 0},
            )

        token = token or CancellationToken(self.time_budget_seconds)
        if token.deadline is None:
            token.deadline = time.monotonic() + self.time_budget_seconds
        by_id = {destination.destination_id: destination for destination in ordered_input}
        anchor_ids = set(anchors) if anchors is not None else {d.destination_id for d in ordered_input if d.is_anchor}
        unknown = anchor_ids - set(by_id)
        if unknown:
            raise ValidationError(f"Anchors reference unknown destinations: {', '.join(sorted(unknown))}")
        for anchor_id in anchor_ids:
            if by_id[anchor_id].fixed_date is None:
                raise ValidationError(f"Anchor {anchor_id} has no fixed date.")

        # Segment slots follow the current order; anchors are re-sorted chronologically.
        runs: list[list[str]] = [[]]
        for destination in ordered_input:
            if destination.destination_id in anchor_ids:
                runs.append([])
            else:
                runs[-1].append(destination.destination_id)
        chronological = [d.destination_id for d in sorted((by_id[a] for a in anchor_ids), key=_anchor_key)]

        edges = self._edges(ordered_input, runs, chronological)
        cost = {pair: edge.distance_m for pair, edge in edges.items()}
        token.raise_if_cancelled()

        sequence: list[str] = []
        iterations = 0
        for index, run in enumerate(runs):
            start = chronological[index - 1] if index > 0 else None
            end = chronological[index] if index < len(chronological) else None
            if run:
                order, used = self._solve_segment(_Segment(run, start, end, cost), run, token)
                sequence.extend(order)
                iterations += used
            if end is not None:
                sequence.append(end)

        legs = []
        for a, b in zip(sequence, sequence[1:]):
            edge = edges[(a, b)]
            legs.append(RouteLeg(from_id=a, to_id=b, distance_m=edge.distance_m, duration_s=edge.duration_s, approximate=edge.approximate))
        approximate_legs = sum(1 for leg in legs if leg.approximate)
        if approximate_legs:
            logger.warning(f"Route uses {approximate_legs} approximate (haversine) legs out of {len(legs)}")

        return OptimizedRoute(
            ordered=[by_id[destination_id] for destination_id in sequence],
            legs=legs,
            total_distance_m=sum(leg.distance_m for leg in legs),
            total_duration_s=sum(leg.duration_s for leg in legs),
            metadata={
                "status": "budget_exhausted" if token.expired else "optimized",
                "segments": sum(1 for run in runs if run),
                "anchors": chronological,
                "two_opt_passes": iterations,
                "approximate_legs": approximate_legs,
                "mode": self.mode,
            },
        )

    def _edges(
        self,
        ordered: Sequence[Destination],
        runs: list[list[str]],
        chronological: list[str],
    ) -> dict[tuple[str, str], RouteEdge]:
        """Fetch only the edges a segment or the final sequence can use."""
        coordinates = {d.destination_id: d.coordinates for d in ordered}
        wanted: set[tuple[str, str]] = set()
        for index, run in enumerate(runs):
            group = list(run)
            if index > 0:
                group.append(chronological[index - 1])
            if index < len(chronological):
                group.append(chronological[index])
            wanted.update((a, b) for a in group for b in group if a != b)
        fetched = self.cache.get_edges(((coordinates[a], coordinates[b]) for a, b in wanted), self.mode)
        return {(a, b): fetched[(coordinates[a], coordinates[b])] for a, b in wanted}

    def _solve_segment(self, segment: _Segment, current: list[str], token: CancellationToken) -> tuple[list[str], int]:
        if len(current) == 1:
            return list(current), 0
        best: list[str] | None = None
        passes = 0
        for candidate in segment.constructions(current):
            token.raise_if_cancelled()
            improved, used = self._two_opt(segment, candidate, token)
            passes += used
            if best is None or segment.rank(improved) < segment.rank(best):
                best = improved
        return best, passes

    def _two_opt(self, segment: _Segment, order: list[str], token: CancellationToken) -> tuple[list[str], int]:
        current = list(order)
        current_rank = segment.rank(current)
        passes = 0
        while passes < self.max_iterations and not token.expired:
            token.raise_if_cancelled()
            passes += 1
            best_move: list[str] | None = None
            best_rank = current_rank
            for i in range(len(current) - 1):
                for j in range(i + 1, len(current)):
                    candidate = current[:i] + current[i:j + 1][::-1] + current[j + 1:]
                    rank = segment.rank(candidate)
                    if rank < best_rank:
                        best_move, best_rank = candidate, rank
            if best_move is None:
                break
            current, current_rank = best_move, best_rank
        return current, passes

"""Route computation for a plan: background optimization applied only while still current."""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from typing import Iterable

from ...config import settings
from ...models.domain import Destination
from ...persistence.store import PlanStore
from ..errors import OptimizationCancelled, StaleRouteError
from ..locking import PlanLocks
from .distance_cache import DistanceCache
from .models import OptimizedRoute
from .optimizer import CancellationToken, RouteOptimizer

logger = logging.getLogger(__name__)


def fingerprint(destinations: Iterable[Destination], precision: int | None = None) -> str:
    """Digest of what an optimized order depends on: membership, coordinates and anchors."""
    precision = precision if precision is not None else settings.coordinate_precision
    rows = sorted(
        (
            d.destination_id,
            round(d.latitude, precision),
            round(d.longitude, precision),
            d.fixed_date.isoformat() if d.fixed_date else None,
            d.fixed_time.isoformat() if d.fixed_time else None,
        )
        for d in destinations
    )
    return hashlib.sha256(json.dumps(rows).encode("utf-8")).hexdigest()


class RouteComputationTracker:
    """Tracks the running optimization per plan so a destination change can cancel it."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}

    def begin(self, plan_id: str, budget_seconds: float | None = None) -> CancellationToken:
        token = CancellationToken(budget_seconds)
        with self._lock:
            previous = self._tokens.get(plan_id)
            self._tokens[plan_id] = token
        if previous is not None:
            previous.cancel()
        return token

    def cancel(self, plan_id: str) -> bool:
        with self._lock:
            token = self._tokens.pop(plan_id, None)
        if token is None:
            return False
        token.cancel()
        logger.info(f"Cancelled in-flight route optimization for plan {plan_id}")
        return True

    def finish(self, plan_id: str, token: CancellationToken) -> None:
        with self._lock:
            if self._tokens.get(plan_id) is token:
                del self._tokens[plan_id]


class RoutePlanningService:
    def __init__(
        self,
        store: PlanStore,
        cache: DistanceCache,
        locks: PlanLocks,
        *,
        optimizer: RouteOptimizer | None = None,
        attempts: int | None = None,
        max_workers: int = 2,
    ) -> None:
        self.store = store
        self.cache = cache
        self.locks = locks
        self.optimizer = optimizer or RouteOptimizer(cache)
        self.attempts = attempts or settings.route_recompute_attempts
        self.tracker = RouteComputationTracker()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="optimizer")
        self._memo_lock = threading.Lock()
        self._memo: dict[str, tuple[str, OptimizedRoute]] = {}

    def compute_route(self, plan_id: str, *, force: bool = False) -> OptimizedRoute:
        """Optimize ``plan_id`` off the caller's thread and persist the new order.

        The plan lock is only taken to compare fingerprints and save; if the
        destinations changed while optimizing, the result is discarded and the
        computation rescheduled, up to ``attempts`` times.
        """
        for attempt in range(1, self.attempts + 1):
            destinations = self.store.list_destinations(plan_id)
            computed_for = fingerprint(destinations, self.cache.precision)
            if not force:
                with self._memo_lock:
                    memo = self._memo.get(plan_id)
                if memo is not None and memo[0] == computed_for:
                    # Same order, but current names and visit durations.
                    by_id = {d.destination_id: d for d in destinations}
                    return replace(memo[1], ordered=[by_id[i] for i in memo[1].destination_ids])

            token = self.tracker.begin(plan_id, self.optimizer.time_budget_seconds)
            try:
                route = self._executor.submit(self.optimizer.optimize, destinations, token=token).result()
            except OptimizationCancelled:
                logger.warning(f"Route for plan {plan_id} cancelled mid-computation (attempt {attempt}/{self.attempts})")
                continue
            finally:
                self.tracker.finish(plan_id, token)

            with self.locks.for_plan(plan_id):
                if fingerprint(self.store.list_destinations(plan_id), self.cache.precision) != computed_for:
                    logger.warning(f"Discarded stale route for plan {plan_id} (attempt {attempt}/{self.attempts})")
                    continue
                for index, destination in enumerate(route.ordered):
                    destination.order_index = index
                self.store.save_destination_order(plan_id, route.destination_ids)
                with self._memo_lock:
                    self._memo[plan_id] = (computed_for, route)
            logger.info(
                f"Route for plan {plan_id}: {len(route.ordered)} stops, "
                f"{route.total_distance_m / 1000:.2f} km, status {route.metadata.get('status')}"
            )
            return route
        raise StaleRouteError(f"Destinations of plan {plan_id} kept changing; gave up after {self.attempts} attempts.")

    def invalidate(self, plan_id: str) -> None:
        """Forget the memoized route and stop any computation still running for it."""
        with self._memo_lock:
            self._memo.pop(plan_id, None)
        self.tracker.cancel(plan_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

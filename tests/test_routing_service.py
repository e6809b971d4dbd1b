import threading
from pathlib import Path

import pytest

from src.tabi.models.domain import Destination
from src.tabi.persistence.filesystem import FileStorage
from src.tabi.persistence.store import FilePlanStore
from src.tabi.services.errors import StaleRouteError
from src.tabi.services.geospatial import haversine_km
from src.tabi.services.locking import PlanLocks
from src.tabi.services.routing.distance_cache import DistanceCache
from src.tabi.services.routing.optimizer import RouteOptimizer
from src.tabi.services.routing.service import RoutePlanningService, fingerprint

PLAN = "kyoto"
POINTS = {
    "A": (35.0000, 135.7000),
    "B": (35.0100, 135.7000),
    "C": (35.0200, 135.7000),
    "D": (35.0300, 135.7000),
}


class HangingEdgeProvider:
    """Answers every pair with road distance 1.2x haversine except A<->B, which never returns in time."""

    def __init__(self) -> None:
        self.release = threading.Event()
        self.calls = 0

    def directions(self, origin, destination, mode="driving"):
        self.calls += 1
        if {tuple(origin), tuple(destination)} == {POINTS["A"], POINTS["B"]}:
            self.release.wait(timeout=5)
        metres = haversine_km(origin[0], origin[1], destination[0], destination[1]) * 1200
        return {"distance": metres, "duration": metres / 11, "path": [origin, destination]}


@pytest.fixture
def store(tmp_path: Path) -> FilePlanStore:
    store = FilePlanStore(FileStorage(root=tmp_path))
    for index, name in enumerate(["C", "A", "D", "B"]):
        lat, lon = POINTS[name]
        store.save_destination(
            Destination(destination_id=name, plan_id=PLAN, name=name, latitude=lat, longitude=lon, order_index=index)
        )
    return store


def test_provider_timeout_still_yields_a_full_route(store):
    provider = HangingEdgeProvider()
    cache = DistanceCache(provider, precision=4, lookup_timeout=0.2)
    service = RoutePlanningService(store, cache, PlanLocks())
    try:
        route = service.compute_route(PLAN)
    finally:
        provider.release.set()
        service.close()
        cache.close()

    assert sorted(route.destination_ids) == ["A", "B", "C", "D"]
    assert route.destination_ids in (["A", "B", "C", "D"], ["D", "C", "B", "A"])
    approximate = [(leg.from_id, leg.to_id) for leg in route.legs if leg.approximate]
    assert approximate in ([("A", "B")], [("B", "A")])
    assert route.metadata["approximate_legs"] == 1


def test_route_order_is_persisted(store):
    cache = DistanceCache(None)
    service = RoutePlanningService(store, cache, PlanLocks())

    route = service.compute_route(PLAN)

    stored = sorted(store.list_destinations(PLAN), key=lambda d: d.order_index)
    assert [d.destination_id for d in stored] == route.destination_ids
    service.close()


def test_unchanged_destinations_reuse_the_previous_route(store):
    cache = DistanceCache(None)
    optimizer = RouteOptimizer(cache)
    runs = []
    original = optimizer.optimize

    def counting(*args, **kwargs):
        runs.append(1)
        return original(*args, **kwargs)

    optimizer.optimize = counting
    service = RoutePlanningService(store, cache, PlanLocks(), optimizer=optimizer)

    first = service.compute_route(PLAN)
    second = service.compute_route(PLAN)
    forced = service.compute_route(PLAN, force=True)

    assert second.destination_ids == first.destination_ids
    assert second.total_distance_m == first.total_distance_m
    assert forced.destination_ids == first.destination_ids
    assert len(runs) == 2
    service.close()


def test_route_computed_against_changed_destinations_is_discarded(store):
    cache = DistanceCache(None)
    optimizer = RouteOptimizer(cache)
    original = optimizer.optimize
    runs = []

    def optimize_while_user_edits(destinations, **kwargs):
        runs.append(1)
        if len(runs) == 1:
            store.save_destination(
                Destination(destination_id="E", plan_id=PLAN, name="E", latitude=35.04, longitude=135.7, order_index=4)
            )
        return original(destinations, **kwargs)

    optimizer.optimize = optimize_while_user_edits
    service = RoutePlanningService(store, cache, PlanLocks(), optimizer=optimizer)

    route = service.compute_route(PLAN)

    assert len(runs) == 2
    assert "E" in route.destination_ids
    service.close()


def test_destinations_that_never_settle_raise_stale_route(store):
    cache = DistanceCache(None)
    optimizer = RouteOptimizer(cache)
    original = optimizer.optimize
    counter = iter(range(100))

    def optimize_while_user_edits(destinations, **kwargs):
        index = next(counter)
        store.save_destination(
            Destination(destination_id=f"X{index}", plan_id=PLAN, name="X", latitude=35.05, longitude=135.7 + index / 100)
        )
        return original(destinations, **kwargs)

    optimizer.optimize = optimize_while_user_edits
    service = RoutePlanningService(store, cache, PlanLocks(), optimizer=optimizer, attempts=2)

    with pytest.raises(StaleRouteError):
        service.compute_route(PLAN)
    service.close()


def test_fingerprint_ignores_order_but_not_coordinates_or_anchors(store):
    destinations = store.list_destinations(PLAN)
    baseline = fingerprint(destinations, 5)

    reordered = list(reversed(destinations))
    reordered[0].order_index = 99
    assert fingerprint(reordered, 5) == baseline

    destinations[0].latitude += 0.01
    assert fingerprint(destinations, 5) != baseline


def test_reused_route_carries_the_current_destination_details(store):
    cache = DistanceCache(None)
    service = RoutePlanningService(store, cache, PlanLocks())
    service.compute_route(PLAN)

    castle = store.get_destination(PLAN, "B")
    castle.name = "Nijo Castle"
    castle.visit_duration_min = 180
    store.save_destination(castle)

    route = service.compute_route(PLAN)

    renamed = next(d for d in route.ordered if d.destination_id == "B")
    assert renamed.name == "Nijo Castle"
    assert renamed.visit_duration_min == 180
    service.close()

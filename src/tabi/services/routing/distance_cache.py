"""Memoized travel edges between coordinate pairs.

The cache is the only component that talks to the directions provider. Keys are
``(rounded origin, rounded destination, mode)`` so near-duplicate lookups share an
entry. Lookups for the same key are coalesced into one upstream call, distinct keys
run in parallel on a bounded worker pool, and every wait carries a timeout after
which a haversine estimate tagged ``approximate`` is returned instead.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Callable, Iterable, Protocol

from ...config import settings
from ..errors import ExternalServiceError
from ..geospatial import Coordinate, haversine_km, round_coordinate, validate_coordinates
from .models import RouteEdge

logger = logging.getLogger(__name__)

EdgeKey = tuple[Coordinate, Coordinate, str]


class DirectionsProvider(Protocol):
    def directions(self, origin: Coordinate, destination: Coordinate, mode: str = "driving") -> dict:
        ...


@dataclass(slots=True)
class _CacheEntry:
    edge: RouteEdge
    expires_at: float


class DistanceCache:
    def __init__(
        self,
        provider: DirectionsProvider | None,
        *,
        ttl_seconds: float | None = None,
        precision: int | None = None,
        max_parallel_lookups: int | None = None,
        lookup_timeout: float | None = None,
        fallback_speeds_kmh: dict[str, float] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.provider = provider
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else settings.distance_cache_ttl_seconds
        self.precision = precision if precision is not None else settings.coordinate_precision
        self.lookup_timeout = lookup_timeout if lookup_timeout is not None else settings.lookup_timeout_seconds
        self.fallback_speeds_kmh = dict(fallback_speeds_kmh or settings.fallback_speeds_kmh)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[EdgeKey, _CacheEntry] = {}
        self._inflight: dict[EdgeKey, tuple[object, Future]] = {}
        self._references: dict[Coordinate, set[str]] = {}
        self._executor = ThreadPoolExecutor(
            max_workers=max_parallel_lookups or settings.max_parallel_lookups,
            thread_name_prefix="directions",
        )
        self._stats = {"hits": 0, "misses": 0, "coalesced": 0, "fallbacks": 0}

    def make_key(self, origin: Coordinate, destination: Coordinate, mode: str) -> EdgeKey:
        origin = validate_coordinates(*origin)
        destination = validate_coordinates(*destination)
        return (
            round_coordinate(origin, self.precision),
            round_coordinate(destination, self.precision),
            mode,
        )

    def get_edge(self, origin: Coordinate, destination: Coordinate, mode: str = "driving") -> RouteEdge:
        key = self.make_key(origin, destination, mode)
        return self._await(key, self._resolve(key), time.monotonic() + self.lookup_timeout)

    def get_edges(
        self,
        pairs: Iterable[tuple[Coordinate, Coordinate]],
        mode: str = "driving",
    ) -> dict[tuple[Coordinate, Coordinate], RouteEdge]:
        """Resolve many edges at once; cache misses are fetched in parallel.

        The result is keyed by the caller's (unrounded) coordinate pairs.
        """
        deadline = time.monotonic() + self.lookup_timeout
        pending: dict[tuple[Coordinate, Coordinate], tuple[EdgeKey, RouteEdge | Future]] = {}
        for origin, destination in pairs:
            if (origin, destination) in pending:
                continue
            key = self.make_key(origin, destination, mode)
            pending[(origin, destination)] = (key, self._resolve(key))
        return {pair: self._await(key, outcome, deadline) for pair, (key, outcome) in pending.items()}

    def _resolve(self, key: EdgeKey) -> RouteEdge | Future:
        origin, destination, mode = key
        if origin == destination:
            return RouteEdge(distance_m=0.0, duration_s=0.0, path=[origin], mode=mode)
        if self.provider is None:
            return self._fallback(key)
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None:
                if entry.expires_at > self._clock():
                    self._stats["hits"] += 1
                    return entry.edge
                del self._entries[key]
            inflight = self._inflight.get(key)
            if inflight is not None:
                self._stats["coalesced"] += 1
                return inflight[1]
            self._stats["misses"] += 1
            ticket = object()
            future = self._executor.submit(self._fetch, key, ticket)
            self._inflight[key] = (ticket, future)
            return future

    def _fetch(self, key: EdgeKey, ticket: object) -> RouteEdge:
        origin, destination, mode = key
        try:
            result = self.provider.directions(origin, destination, mode)
            edge = RouteEdge(
                distance_m=float(result["distance"]),
                duration_s=float(result["duration"]),
                path=[tuple(point) for point in result.get("path") or []],
                mode=mode,
            )
        except ExternalServiceError:
            self._finish(key, ticket, None)
            raise
        except Exception as exc:
            self._finish(key, ticket, None)
            raise ExternalServiceError(f"Directions provider returned an unusable edge: {exc}") from exc
        self._finish(key, ticket, edge)
        return edge

    def _finish(self, key: EdgeKey, ticket: object, edge: RouteEdge | None) -> None:
        with self._lock:
            inflight = self._inflight.get(key)
            # Invalidated (and maybe re-requested) while the call was in flight.
            if inflight is None or inflight[0] is not ticket:
                return
            del self._inflight[key]
            if edge is not None:
                self._entries[key] = _CacheEntry(edge=edge, expires_at=self._clock() + self.ttl_seconds)

    def _await(self, key: EdgeKey, outcome: RouteEdge | Future, deadline: float) -> RouteEdge:
        if isinstance(outcome, RouteEdge):
            return outcome
        try:
            return outcome.result(timeout=max(0.0, deadline - time.monotonic()))
        except FutureTimeoutError:
            logger.warning(f"Directions lookup timed out for {key[0]} -> {key[1]} ({key[2]}); using haversine estimate")
        except ExternalServiceError as exc:
            logger.warning(f"{exc}; using haversine estimate")
        return self._fallback(key)

    def _fallback(self, key: EdgeKey) -> RouteEdge:
        origin, destination, mode = key
        with self._lock:
            self._stats["fallbacks"] += 1
        distance_km = haversine_km(origin[0], origin[1], destination[0], destination[1])
        speed_kmh = self.fallback_speeds_kmh.get(mode) or self.fallback_speeds_kmh.get("driving", 40.0)
        return RouteEdge(
            distance_m=distance_km * 1000.0,
            duration_s=distance_km / speed_kmh * 3600.0,
            path=[origin, destination],
            approximate=True,
            mode=mode,
        )

    def invalidate_coordinate(self, coordinate: Coordinate) -> int:
        """Drop every cached or in-flight edge touching ``coordinate``."""
        rounded = round_coordinate(coordinate, self.precision)
        with self._lock:
            stale = [key for key in self._entries if rounded in (key[0], key[1])]
            for key in stale:
                del self._entries[key]
            for key in [key for key in self._inflight if rounded in (key[0], key[1])]:
                del self._inflight[key]
        if stale:
            logger.debug(f"Evicted {len(stale)} cached edges touching {rounded}")
        return len(stale)

    def retain(self, plan_id: str, coordinate: Coordinate) -> None:
        rounded = round_coordinate(coordinate, self.precision)
        with self._lock:
            self._references.setdefault(rounded, set()).add(plan_id)

    def release(self, plan_id: str, coordinate: Coordinate) -> bool:
        """Forget that ``plan_id`` uses ``coordinate``; evict its edges once no plan does.

        Returns True when the coordinate's edges were evicted.
        """
        rounded = round_coordinate(coordinate, self.precision)
        with self._lock:
            holders = self._references.get(rounded)
            if holders is not None:
                holders.discard(plan_id)
                if holders:
                    return False
                del self._references[rounded]
        self.invalidate_coordinate(rounded)
        return True

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if entry.expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {**self._stats, "entries": len(self._entries), "inflight": len(self._inflight)}

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

"""Facade over routing, scheduling and offline sync for one process."""

from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import replace
from datetime import date, datetime, timezone
from functools import lru_cache
from typing import Any, Optional

from ..config import settings
from ..models.domain import (
    ConflictDetail,
    Destination,
    EventState,
    PendingMutation,
    ScheduleEvent,
)
from ..persistence.filesystem import FileStorage
from ..persistence.store import PlanStore, get_plan_store
from .errors import DrainInProgressError, NotFoundError, ValidationError
from .geospatial import Coordinate, validate_coordinates
from .locking import PlanLocks
from .routing.distance_cache import DirectionsProvider, DistanceCache
from .routing.models import OptimizedRoute
from .routing.optimizer import sequence_order
from .routing.osrm_client import OSRMClient
from .routing.service import RoutePlanningService
from .schedule.manager import ScheduleManager
from .sync.queue import DrainReport, SyncQueue
from .sync.resolver import Applied, ConflictResolver, Conflicted, MergeResult, Rejected

logger = logging.getLogger(__name__)

DESTINATION_FIELDS = (
    "name",
    "latitude",
    "longitude",
    "category",
    "fixed_date",
    "fixed_time",
    "visit_duration_min",
)


def default_provider() -> DirectionsProvider | None:
    if not settings.osrm_base_url:
        logger.info("OSRM not configured - travel edges will be haversine estimates")
        return None
    return OSRMClient()


class PlanningEngine:
    """Entry point used by the API: every plan mutation runs under that plan's lock."""

    def __init__(
        self,
        store: PlanStore | None = None,
        cache: DistanceCache | None = None,
        *,
        storage: FileStorage | None = None,
        mode: str = "driving",
    ) -> None:
        self.storage = storage or FileStorage()
        self.store = store or get_plan_store()
        self.cache = cache or DistanceCache(default_provider())
        self.mode = mode
        self.locks = PlanLocks()
        self.routes = RoutePlanningService(self.store, self.cache, self.locks)
        self.schedule = ScheduleManager(self.store, self.cache, mode=mode)
        self.resolver = ConflictResolver()
        self._queues: dict[str, SyncQueue] = {}
        self._queues_lock = threading.Lock()
        self._background = ThreadPoolExecutor(max_workers=2, thread_name_prefix="sync-drain")

    # Destinations

    def list_destinations(self, plan_id: str) -> list[Destination]:
        return sequence_order(self.store.list_destinations(plan_id))

    def get_destination(self, plan_id: str, destination_id: str) -> Destination:
        destination = self.store.get_destination(plan_id, destination_id)
        if destination is None:
            raise NotFoundError("destination", destination_id)
        return destination

    def add_destination(
        self,
        plan_id: str,
        *,
        name: str,
        latitude: float,
        longitude: float,
        category: Optional[str] = None,
        fixed_date: Optional[date] = None,
        fixed_time=None,
        visit_duration_min: Optional[int] = None,
        destination_id: Optional[str] = None,
    ) -> Destination:
        latitude, longitude = validate_coordinates(latitude, longitude)
        _check_anchor(fixed_date, fixed_time)
        with self.locks.for_plan(plan_id):
            existing = self.store.list_destinations(plan_id)
            if destination_id and any(d.destination_id == destination_id for d in existing):
                raise ValidationError(f"Destination {destination_id} already exists in plan {plan_id}.")
            indexes = [d.order_index for d in existing if d.order_index is not None]
            destination = Destination(
                destination_id=destination_id or uuid.uuid4().hex,
                plan_id=plan_id,
                name=name,
                latitude=latitude,
                longitude=longitude,
                category=category,
                fixed_date=fixed_date,
                fixed_time=fixed_time,
                visit_duration_min=visit_duration_min or settings.default_visit_duration_min,
                order_index=max(indexes) + 1 if indexes else len(existing),
            )
            self.store.save_destination(destination)
            self.cache.retain(plan_id, destination.coordinates)
            self.routes.invalidate(plan_id)
        return destination

    def update_destination(self, plan_id: str, destination_id: str, changes: dict[str, Any]) -> Destination:
        """Apply the given fields; moving a destination drops its cached edges."""
        unknown = set(changes) - set(DESTINATION_FIELDS)
        if unknown:
            raise ValidationError(f"Unknown destination fields: {', '.join(sorted(unknown))}")
        with self.locks.for_plan(plan_id):
            current = self.get_destination(plan_id, destination_id)
            updated = replace(current, **changes)
            updated.latitude, updated.longitude = validate_coordinates(updated.latitude, updated.longitude)
            _check_anchor(updated.fixed_date, updated.fixed_time)
            moved = updated.coordinates != current.coordinates
            re_anchored = (updated.fixed_date, updated.fixed_time) != (current.fixed_date, current.fixed_time)
            self.store.save_destination(updated)
            if moved:
                self.cache.invalidate_coordinate(current.coordinates)
                self.cache.retain(plan_id, updated.coordinates)
                self._release_coordinate(plan_id, current.coordinates)
            if moved or re_anchored:
                self.routes.invalidate(plan_id)
        return updated

    def remove_destination(self, plan_id: str, destination_id: str) -> list[ScheduleEvent]:
        """Delete a destination, cancel its events and release its cached edges."""
        with self.locks.for_plan(plan_id):
            destination = self.get_destination(plan_id, destination_id)
            self.store.delete_destination(plan_id, destination_id)
            cancelled = self.schedule.cancel_destination_events(plan_id, destination_id)
            self._release_coordinate(plan_id, destination.coordinates)
            self.routes.invalidate(plan_id)
        logger.info(f"Removed destination {destination_id} from plan {plan_id}; cancelled {len(cancelled)} events")
        return cancelled

    def _release_coordinate(self, plan_id: str, coordinate: Coordinate) -> bool:
        # Plans still using the coordinate may never have been retained in this process.
        holders = self.store.plans_using_coordinate(coordinate[0], coordinate[1], self.cache.precision)
        for holder in holders:
            self.cache.retain(holder, coordinate)
        if plan_id in holders:
            return False
        return self.cache.release(plan_id, coordinate)

    # Routing and schedule

    def compute_route(self, plan_id: str, *, force: bool = False) -> OptimizedRoute:
        return self.routes.compute_route(plan_id, force=force)

    def build_schedule(self, plan_id: str, start_date: date) -> list[ScheduleEvent]:
        route = self.compute_route(plan_id)
        with self.locks.for_plan(plan_id):
            return self.schedule.propose_from_route(plan_id, route, start_date)

    def list_events(self, plan_id: str, state: EventState | None = None) -> list[ScheduleEvent]:
        return self.schedule.list_events(plan_id, state)

    def get_event(self, plan_id: str, event_id: str) -> ScheduleEvent:
        return self.schedule.get_event(plan_id, event_id)

    def create_event(self, plan_id: str, **values: Any) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.create_event(plan_id, **values)

    def edit_event(
        self,
        plan_id: str,
        event_id: str,
        start: datetime,
        end: datetime,
        *,
        force: bool = False,
        expected_version: Optional[int] = None,
    ) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.apply_edit(
                plan_id, event_id, start, end, force=force, expected_version=expected_version
            )

    def confirm_event(self, plan_id: str, event_id: str, *, force: bool = False) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.confirm(plan_id, event_id, force=force)

    def delete_event(self, plan_id: str, event_id: str) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.delete_event(plan_id, event_id)

    def restore_event(self, plan_id: str, event_id: str, *, force: bool = False) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.restore_event(plan_id, event_id, force=force)

    def resolve_conflict(self, plan_id: str, event_id: str, choice: str, **kwargs: Any) -> ScheduleEvent:
        with self.locks.for_plan(plan_id):
            return self.schedule.resolve_conflict(plan_id, event_id, choice, **kwargs)

    def purge_cancelled(self, plan_id: str) -> list[str]:
        with self.locks.for_plan(plan_id):
            return self.schedule.purge_cancelled(plan_id)

    # Mutations and offline sync

    def apply_schedule_mutation(self, plan_id: str, mutation: PendingMutation) -> MergeResult:
        """Merge one mutation into the plan; a known idempotency key replays its first outcome."""
        if mutation.plan_id != plan_id:
            mutation = replace(mutation, plan_id=plan_id)
        if not mutation.idempotency_key:
            raise ValidationError("Schedule mutations need an idempotency key.")
        with self.locks.for_plan(plan_id):
            record = self.store.get_mutation_record(plan_id, mutation.idempotency_key)
            if record is not None:
                return self._replay(plan_id, record)

            server_event = self.store.get_event(plan_id, mutation.target_id)
            result = self.resolver.merge(mutation, server_event)
            if isinstance(result, Applied) and not result.noop and result.event is not None:
                result = self._check_overlap(result.event, server_event)
            if isinstance(result, Conflicted) or (isinstance(result, Applied) and not result.noop and result.event):
                self.store.save_event(result.event)

            event = result.event
            self.store.save_mutation_record(
                plan_id,
                mutation.idempotency_key,
                {
                    "status": result.status,
                    "event_id": mutation.target_id,
                    "version": event.version if event is not None else None,
                    "reason": result.reason if isinstance(result, Rejected) else None,
                    "device_id": mutation.device_id,
                    "applied_at": datetime.now(timezone.utc).isoformat(),
                },
            )
        if isinstance(result, Rejected):
            logger.warning(f"Rejected {mutation.op_kind.value} of {mutation.target_id} in plan {plan_id}: {result.reason}")
        return result

    def _check_overlap(self, event: ScheduleEvent, server_event: Optional[ScheduleEvent]) -> MergeResult:
        if event.state != EventState.SCHEDULED:
            return Applied(event=event)
        conflicting = self.schedule.find_overlaps(event)
        if not conflicting:
            return Applied(event=event)
        detail = ConflictDetail(
            reason="overlap",
            fields=["start", "end"],
            local={"start": event.start, "end": event.end},
            server={"start": server_event.start, "end": server_event.end} if server_event is not None else {},
            server_version=server_event.version if server_event is not None else None,
            related_event_ids=conflicting,
        )
        self.schedule.mark_conflicted(event, detail)
        return Conflicted(event=event, detail=detail)

    def _replay(self, plan_id: str, record: dict[str, Any]) -> MergeResult:
        event = self.store.get_event(plan_id, record["event_id"])
        if record.get("status") == Rejected.status:
            return Rejected(reason=record.get("reason") or "Rejected.", event=event)
        if record.get("status") == Conflicted.status and event is not None and event.conflict is not None:
            return Conflicted(event=event, detail=event.conflict)
        return Applied(event=event, noop=True)

    def queue_for(self, device_id: str) -> SyncQueue:
        with self._queues_lock:
            queue = self._queues.get(device_id)
            if queue is None:
                queue = self._queues[device_id] = SyncQueue(device_id, self.storage)
            return queue

    def enqueue_offline_mutation(self, plan_id: str, mutation: PendingMutation) -> PendingMutation:
        if not mutation.device_id:
            raise ValidationError("Offline mutations need the id of the device that made them.")
        return self.queue_for(mutation.device_id).enqueue(replace(mutation, plan_id=plan_id))

    def drain_offline_queue(self, device_id: str) -> DrainReport:
        return self.queue_for(device_id).drain(
            lambda mutation: self.apply_schedule_mutation(mutation.plan_id, mutation),
            already_applied=self._already_applied,
        )

    def acknowledge_rejection(self, device_id: str, idempotency_key: str) -> dict[str, Any]:
        """Let the device move on past a rejected mutation; its target drains again."""
        return self.queue_for(device_id).acknowledge(idempotency_key)

    def _already_applied(self, mutation: PendingMutation) -> bool:
        record = self.store.get_mutation_record(mutation.plan_id, mutation.idempotency_key)
        return record is not None and record.get("status") != Rejected.status

    def on_connectivity_restored(self, device_id: str) -> Future | None:
        """Start a background drain unless one is already running for the device."""
        queue = self.queue_for(device_id)
        if queue.draining:
            logger.debug(f"Drain already running for device {device_id}")
            return None
        return self._background.submit(self._drain_in_background, device_id)

    def _drain_in_background(self, device_id: str) -> DrainReport | None:
        try:
            return self.drain_offline_queue(device_id)
        except DrainInProgressError:
            logger.debug(f"Drain already running for device {device_id}")
            return None
        except Exception:
            logger.exception(f"Background drain failed for device {device_id}")
            raise

    def close(self) -> None:
        self._background.shutdown(wait=False)
        self.routes.close()
        self.cache.close()


def _check_anchor(fixed_date: Optional[date], fixed_time) -> None:
    if fixed_time is not None and fixed_date is None:
        raise ValidationError("A fixed time needs a fixed date.")


@lru_cache()
def get_engine() -> PlanningEngine:
    return PlanningEngine()

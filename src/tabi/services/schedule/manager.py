"""Calendar events derived from optimized routes and user edits.

Lifecycle per event::

    Proposed -> Scheduled -> Conflicted -> Scheduled | Cancelled
    Scheduled -> Cancelled            (deletion, soft)
    Cancelled -> Scheduled            (restore)

Optimizer output starts as Proposed; confirming or editing schedules it. Only the
conflict resolver and forced overrides put an event into Conflicted. No two
Scheduled events of a plan may overlap unless one allows overlap; when both
reference destinations that are adjacent in the visiting order, the travel time
between them is reserved as a buffer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import replace
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable, Optional

from ...config import settings
from ...models.domain import (
    EVENT_MUTABLE_FIELDS,
    ConflictDetail,
    EventState,
    ScheduleEvent,
    as_utc,
    coerce_event_field,
)
from ...persistence.store import PlanStore
from ..errors import ConflictError, InvalidTransitionError, NotFoundError, OverlapError, ValidationError
from ..routing.distance_cache import DistanceCache
from ..routing.models import OptimizedRoute
from ..routing.optimizer import sequence_order

logger = logging.getLogger(__name__)

TRANSITIONS: dict[EventState, set[EventState]] = {
    EventState.PROPOSED: {EventState.SCHEDULED, EventState.CONFLICTED, EventState.CANCELLED},
    EventState.SCHEDULED: {EventState.CONFLICTED, EventState.CANCELLED},
    EventState.CONFLICTED: {EventState.SCHEDULED, EventState.CANCELLED},
    EventState.CANCELLED: {EventState.SCHEDULED},
}


def transition(event: ScheduleEvent, target: EventState) -> None:
    if target not in TRANSITIONS[event.state]:
        raise InvalidTransitionError(event.event_id, event.state.value, target.value)
    event.state = target


def bump_version(event: ScheduleEvent, changed_fields: Iterable[str] = ()) -> None:
    """Record an accepted mutation: new version, stamped on every changed field."""
    event.version += 1
    for name in changed_fields:
        event.field_versions[name] = event.version


def validate_interval(start: datetime, end: datetime) -> None:
    if end <= start:
        raise ValidationError(f"Event end {end.isoformat()} must be after start {start.isoformat()}.")


def new_event_id() -> str:
    return uuid.uuid4().hex


class ScheduleManager:
    def __init__(
        self,
        store: PlanStore,
        cache: DistanceCache,
        *,
        mode: str = "driving",
        day_start_hour: int | None = None,
        day_end_hour: int | None = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.mode = mode
        self.day_start_hour = day_start_hour if day_start_hour is not None else settings.day_start_hour
        self.day_end_hour = day_end_hour if day_end_hour is not None else settings.day_end_hour

    # Queries

    def get_event(self, plan_id: str, event_id: str) -> ScheduleEvent:
        event = self.store.get_event(plan_id, event_id)
        if event is None:
            raise NotFoundError("event", event_id)
        return event

    def list_events(self, plan_id: str, state: EventState | None = None) -> list[ScheduleEvent]:
        events = sorted(self.store.list_events(plan_id), key=lambda e: (e.start, e.event_id))
        return [event for event in events if state is None or event.state == state]

    def find_overlaps(self, event: ScheduleEvent, others: Iterable[ScheduleEvent] | None = None) -> list[str]:
        """Ids of Scheduled events that ``event`` would collide with, travel buffers included."""
        if event.overlap_allowed:
            return []
        pool = self.store.list_events(event.plan_id) if others is None else list(others)
        candidates = [
            other
            for other in pool
            if other.event_id != event.event_id
            and other.state == EventState.SCHEDULED
            and not other.overlap_allowed
        ]
        if not candidates:
            return []
        gaps = self._travel_gaps(event, candidates)
        conflicting = []
        for other in candidates:
            gap_before, gap_after = gaps.get(other.event_id, (timedelta(0), timedelta(0)))
            # gap_before: other -> event travel; gap_after: event -> other travel
            if event.start < other.end + gap_before and other.start < event.end + gap_after:
                conflicting.append(other.event_id)
        return sorted(conflicting)

    def _travel_gaps(
        self,
        event: ScheduleEvent,
        candidates: list[ScheduleEvent],
    ) -> dict[str, tuple[timedelta, timedelta]]:
        if event.destination_id is None or event.all_day:
            return {}
        destinations = sequence_order(self.store.list_destinations(event.plan_id))
        position = {d.destination_id: index for index, d in enumerate(destinations)}
        by_id = {d.destination_id: d for d in destinations}
        if event.destination_id not in position:
            return {}
        own = by_id[event.destination_id]
        adjacent = [
            other
            for other in candidates
            if not other.all_day
            and other.destination_id in position
            and abs(position[other.destination_id] - position[event.destination_id]) == 1
        ]
        if not adjacent:
            return {}
        pairs = []
        for other in adjacent:
            neighbour = by_id[other.destination_id].coordinates
            pairs.extend([(neighbour, own.coordinates), (own.coordinates, neighbour)])
        edges = self.cache.get_edges(pairs, self.mode)
        gaps = {}
        for other in adjacent:
            neighbour = by_id[other.destination_id].coordinates
            gaps[other.event_id] = (
                timedelta(seconds=edges[(neighbour, own.coordinates)].duration_s),
                timedelta(seconds=edges[(own.coordinates, neighbour)].duration_s),
            )
        return gaps

    # Lifecycle

    def propose_from_route(self, plan_id: str, route: OptimizedRoute, start_date: date) -> list[ScheduleEvent]:
        """Replace the plan's Proposed events with a fresh layout of ``route``."""
        for stale in self.list_events(plan_id, EventState.PROPOSED):
            if self._referenced_by_conflict(plan_id, stale.event_id):
                transition(stale, EventState.CANCELLED)
                bump_version(stale)
                self.store.save_event(stale)
            else:
                self.store.delete_event(plan_id, stale.event_id)

        proposals = []
        cursor = self._day_start(start_date)
        for index, destination in enumerate(route.ordered):
            if index > 0:
                leg = route.leg_into(destination.destination_id)
                if leg is not None:
                    cursor += timedelta(seconds=leg.duration_s)
            visit = timedelta(minutes=destination.visit_duration_min or settings.default_visit_duration_min)
            if destination.fixed_date is not None:
                if destination.fixed_time is not None:
                    pinned = datetime.combine(destination.fixed_date, destination.fixed_time)
                    missed = pinned < cursor
                else:
                    pinned = self._day_start(destination.fixed_date)
                    missed = cursor.date() > destination.fixed_date
                if missed:
                    # Earlier stops run past the anchor; proposals never go back in time.
                    logger.warning(
                        f"Anchor {destination.destination_id} of plan {plan_id} at {pinned.isoformat()} "
                        f"is unreachable; proposed at {cursor.isoformat()}"
                    )
                cursor = max(cursor, pinned)
            else:
                cursor = max(cursor, self._day_start(cursor.date()))
                if cursor + visit > self._day_end(cursor.date()):
                    cursor = self._day_start(cursor.date() + timedelta(days=1))
            event = self._new_event(
                plan_id,
                start=cursor,
                end=cursor + visit,
                title=destination.name,
                destination_id=destination.destination_id,
                state=EventState.PROPOSED,
            )
            self.store.save_event(event)
            proposals.append(event)
            cursor = event.end
        logger.info(f"Proposed {len(proposals)} events for plan {plan_id} starting {start_date.isoformat()}")
        return proposals

    def create_event(
        self,
        plan_id: str,
        *,
        start: datetime,
        end: datetime,
        title: str = "",
        destination_id: Optional[str] = None,
        all_day: bool = False,
        overlap_allowed: bool = False,
        event_id: Optional[str] = None,
        force: bool = False,
    ) -> ScheduleEvent:
        start, end = as_utc(start), as_utc(end)
        validate_interval(start, end)
        if event_id and self.store.get_event(plan_id, event_id) is not None:
            raise ValidationError(f"Event {event_id} already exists.")
        event = self._new_event(
            plan_id,
            start=start,
            end=end,
            title=title,
            destination_id=destination_id,
            all_day=all_day,
            overlap_allowed=overlap_allowed,
            event_id=event_id,
            state=EventState.SCHEDULED,
        )
        self._admit(event, force=force)
        self.store.save_event(event)
        return event

    def confirm(self, plan_id: str, event_id: str, *, force: bool = False) -> ScheduleEvent:
        event = self.get_event(plan_id, event_id)
        if event.state == EventState.SCHEDULED:
            return event
        if event.state != EventState.PROPOSED:
            raise InvalidTransitionError(event_id, event.state.value, EventState.SCHEDULED.value)
        self._admit(event, force=force)
        transition(event, EventState.SCHEDULED)
        bump_version(event)
        self.store.save_event(event)
        return event

    def apply_edit(
        self,
        plan_id: str,
        event_id: str,
        start: datetime,
        end: datetime,
        *,
        force: bool = False,
        expected_version: Optional[int] = None,
    ) -> ScheduleEvent:
        """Move an event (drag-and-drop or API edit).

        Raises ``OverlapError`` listing the colliding events and leaves the event
        untouched, unless ``force`` is set; a forced edit marks every displaced
        event Conflicted so it gets its own resolution.
        """
        start, end = as_utc(start), as_utc(end)
        validate_interval(start, end)
        current = self.get_event(plan_id, event_id)
        if expected_version is not None and expected_version != current.version:
            raise ConflictError(
                f"Event {event_id} is at version {current.version}, edit was based on {expected_version}.",
                detail={"event_id": event_id, "current_version": current.version, "expected_version": expected_version},
            )
        if current.state == EventState.CONFLICTED:
            raise ConflictError(f"Event {event_id} has an unresolved conflict; resolve it first.", detail=current.conflict)
        if current.state == EventState.CANCELLED:
            raise InvalidTransitionError(event_id, current.state.value, EventState.SCHEDULED.value)

        updated = replace(current, start=start, end=end, field_versions=dict(current.field_versions))
        self._admit(updated, force=force)
        if updated.state == EventState.PROPOSED:
            transition(updated, EventState.SCHEDULED)
        changed = [name for name in ("start", "end") if getattr(updated, name) != getattr(current, name)]
        bump_version(updated, changed)
        self.store.save_event(updated)
        return updated

    def delete_event(self, plan_id: str, event_id: str) -> ScheduleEvent:
        event = self.get_event(plan_id, event_id)
        if event.state == EventState.CANCELLED:
            return event
        transition(event, EventState.CANCELLED)
        bump_version(event)
        self.store.save_event(event)
        return event

    def restore_event(self, plan_id: str, event_id: str, *, force: bool = False) -> ScheduleEvent:
        event = self.get_event(plan_id, event_id)
        if event.state != EventState.CANCELLED:
            raise InvalidTransitionError(event_id, event.state.value, EventState.SCHEDULED.value)
        self._admit(event, force=force)
        transition(event, EventState.SCHEDULED)
        bump_version(event)
        self.store.save_event(event)
        return event

    def resolve_conflict(
        self,
        plan_id: str,
        event_id: str,
        choice: str,
        *,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        force: bool = False,
    ) -> ScheduleEvent:
        """Settle a Conflicted event with ``local``, ``server``, ``custom`` (start/end) or ``cancel``."""
        event = self.get_event(plan_id, event_id)
        if event.state != EventState.CONFLICTED or event.conflict is None:
            raise InvalidTransitionError(event_id, event.state.value, EventState.SCHEDULED.value)
        if choice == "cancel":
            event.conflict = None
            transition(event, EventState.CANCELLED)
            bump_version(event)
            self.store.save_event(event)
            return event

        if choice in ("local", "server"):
            values = event.conflict.local if choice == "local" else event.conflict.server
        elif choice == "custom":
            if start is None or end is None:
                raise ValidationError("A custom resolution needs both start and end.")
            values = {"start": start, "end": end}
        else:
            raise ValidationError(f"Unknown resolution choice '{choice}'.")

        updated = replace(event, field_versions=dict(event.field_versions))
        changed = []
        for name, value in values.items():
            value = coerce_event_field(name, value)
            if getattr(updated, name) != value:
                setattr(updated, name, value)
                changed.append(name)
        validate_interval(updated.start, updated.end)
        self._admit(updated, force=force)
        updated.conflict = None
        transition(updated, EventState.SCHEDULED)
        bump_version(updated, changed)
        self.store.save_event(updated)
        return updated

    def mark_conflicted(self, event: ScheduleEvent, detail: ConflictDetail) -> ScheduleEvent:
        """Pull an event out of scheduling until a human resolves ``detail``."""
        if event.state == EventState.CONFLICTED and event.conflict is not None:
            detail.related_event_ids = sorted(set(event.conflict.related_event_ids) | set(detail.related_event_ids))
        else:
            transition(event, EventState.CONFLICTED)
        event.conflict = detail
        bump_version(event)
        return event

    def cancel_destination_events(self, plan_id: str, destination_id: str) -> list[ScheduleEvent]:
        cancelled = []
        for event in self.store.list_events(plan_id):
            if event.destination_id != destination_id or event.state == EventState.CANCELLED:
                continue
            event.conflict = None
            transition(event, EventState.CANCELLED)
            bump_version(event)
            self.store.save_event(event)
            cancelled.append(event)
        return cancelled

    def purge_cancelled(self, plan_id: str) -> list[str]:
        """Physically remove Cancelled events no outstanding conflict refers to."""
        events = self.store.list_events(plan_id)
        referenced = {
            related
            for event in events
            if event.state == EventState.CONFLICTED and event.conflict is not None
            for related in event.conflict.related_event_ids
        }
        purged = []
        for event in events:
            if event.state == EventState.CANCELLED and event.event_id not in referenced:
                self.store.delete_event(plan_id, event.event_id)
                purged.append(event.event_id)
        return purged

    # Internals

    def _admit(self, event: ScheduleEvent, *, force: bool) -> None:
        conflicting = self.find_overlaps(event)
        if not conflicting:
            return
        if not force:
            raise OverlapError(event.event_id, conflicting)
        for other_id in conflicting:
            displaced = self.get_event(event.plan_id, other_id)
            self.mark_conflicted(
                displaced,
                ConflictDetail(
                    reason="displaced",
                    fields=["start", "end"],
                    local={},
                    server={"start": displaced.start, "end": displaced.end},
                    server_version=displaced.version,
                    related_event_ids=[event.event_id],
                ),
            )
            self.store.save_event(displaced)
        logger.warning(f"Forced edit of event {event.event_id} displaced {', '.join(conflicting)}")

    def _referenced_by_conflict(self, plan_id: str, event_id: str) -> bool:
        return any(
            event.conflict is not None and event_id in event.conflict.related_event_ids
            for event in self.store.list_events(plan_id)
            if event.state == EventState.CONFLICTED
        )

    def _new_event(self, plan_id: str, *, start: datetime, end: datetime, state: EventState, event_id=None, **values: Any) -> ScheduleEvent:
        event = ScheduleEvent(event_id=event_id or new_event_id(), plan_id=plan_id, start=start, end=end, state=state, **values)
        event.field_versions = {name: event.version for name in EVENT_MUTABLE_FIELDS}
        return event

    def _day_start(self, day: date) -> datetime:
        return datetime.combine(day, time(hour=self.day_start_hour))

    def _day_end(self, day: date) -> datetime:
        if self.day_end_hour >= 24:
            return datetime.combine(day + timedelta(days=1), time.min)
        return datetime.combine(day, time(hour=self.day_end_hour))

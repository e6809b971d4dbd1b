from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path

import pytest

from src.tabi.models.domain import ConflictDetail, Destination, EventState
from src.tabi.persistence.filesystem import FileStorage
from src.tabi.persistence.store import FilePlanStore
from src.tabi.services.errors import ConflictError, InvalidTransitionError, OverlapError, ValidationError
from src.tabi.services.routing.distance_cache import DistanceCache
from src.tabi.services.routing.optimizer import RouteOptimizer
from src.tabi.services.schedule.manager import ScheduleManager

PLAN = "kyoto"
DAY = date(2026, 5, 1)


def _at(hour: int, minute: int = 0, day: date = DAY) -> datetime:
    return datetime.combine(day, time(hour, minute))


@pytest.fixture
def store(tmp_path: Path) -> FilePlanStore:
    return FilePlanStore(FileStorage(root=tmp_path))


@pytest.fixture
def manager(store: FilePlanStore) -> ScheduleManager:
    return ScheduleManager(store, DistanceCache(None), day_start_hour=9, day_end_hour=20)


def _destination(store, did, lat, lon, order, fixed=None, at=None, minutes=60) -> Destination:
    destination = Destination(
        destination_id=did,
        plan_id=PLAN,
        name=did.title(),
        latitude=lat,
        longitude=lon,
        fixed_date=fixed,
        fixed_time=at,
        visit_duration_min=minutes,
        order_index=order,
    )
    store.save_destination(destination)
    return destination


def test_overlapping_edit_reports_the_colliding_event_and_changes_nothing(manager):
    museum = manager.create_event(PLAN, start=_at(10), end=_at(12), title="Museum")
    lunch = manager.create_event(PLAN, start=_at(13), end=_at(14), title="Lunch")

    with pytest.raises(OverlapError) as excinfo:
        manager.apply_edit(PLAN, lunch.event_id, _at(11), _at(13))

    assert excinfo.value.event_id == lunch.event_id
    assert excinfo.value.conflicting_event_ids == [museum.event_id]
    stored = manager.get_event(PLAN, lunch.event_id)
    assert stored.start == _at(13)
    assert stored.version == lunch.version


def test_every_overlapping_event_is_listed(manager):
    first = manager.create_event(PLAN, start=_at(9), end=_at(10))
    second = manager.create_event(PLAN, start=_at(11), end=_at(12))
    moving = manager.create_event(PLAN, start=_at(15), end=_at(16))

    with pytest.raises(OverlapError) as excinfo:
        manager.apply_edit(PLAN, moving.event_id, _at(9, 30), _at(11, 30))

    assert excinfo.value.conflicting_event_ids == sorted([first.event_id, second.event_id])


def test_back_to_back_events_do_not_overlap(manager):
    manager.create_event(PLAN, start=_at(10), end=_at(11))
    later = manager.create_event(PLAN, start=_at(14), end=_at(15))

    moved = manager.apply_edit(PLAN, later.event_id, _at(11), _at(12))

    assert moved.start == _at(11)
    assert moved.version == later.version + 1
    assert moved.field_versions["start"] == moved.version


def test_travel_time_between_adjacent_destinations_is_a_buffer(manager, store):
    # About 11 km apart: roughly 17 minutes at the 40 km/h fallback speed
    _destination(store, "temple", 35.0000, 135.7000, 0)
    _destination(store, "garden", 35.1000, 135.7000, 1)
    manager.create_event(PLAN, start=_at(10), end=_at(11), destination_id="temple")

    with pytest.raises(OverlapError):
        manager.create_event(PLAN, start=_at(11, 5), end=_at(12), destination_id="garden")

    garden = manager.create_event(PLAN, start=_at(11, 30), end=_at(12, 30), destination_id="garden")
    assert garden.state == EventState.SCHEDULED


def test_free_events_have_no_travel_buffer(manager):
    manager.create_event(PLAN, start=_at(10), end=_at(11), title="Tea ceremony")

    coffee = manager.create_event(PLAN, start=_at(11, 5), end=_at(11, 30), title="Coffee")

    assert coffee.state == EventState.SCHEDULED


def test_forced_edit_marks_displaced_events_conflicted(manager):
    museum = manager.create_event(PLAN, start=_at(10), end=_at(12))
    lunch = manager.create_event(PLAN, start=_at(13), end=_at(14))

    moved = manager.apply_edit(PLAN, lunch.event_id, _at(11), _at(13), force=True)

    displaced = manager.get_event(PLAN, museum.event_id)
    assert moved.state == EventState.SCHEDULED
    assert displaced.state == EventState.CONFLICTED
    assert displaced.conflict.reason == "displaced"
    assert displaced.conflict.related_event_ids == [lunch.event_id]
    assert displaced.version == museum.version + 1


def test_all_day_events_collide_with_timed_events_on_their_day(manager):
    festival = manager.create_event(
        PLAN, start=_at(0), end=_at(0, day=DAY + timedelta(days=1)), all_day=True, title="Festival"
    )

    with pytest.raises(OverlapError) as excinfo:
        manager.create_event(PLAN, start=_at(10), end=_at(11))
    assert excinfo.value.conflicting_event_ids == [festival.event_id]
    with pytest.raises(OverlapError):
        manager.create_event(PLAN, start=_at(0), end=_at(0, day=DAY + timedelta(days=1)), all_day=True)
    tomorrow = DAY + timedelta(days=1)
    next_day = manager.create_event(PLAN, start=_at(10, day=tomorrow), end=_at(11, day=tomorrow))
    assert next_day.state == EventState.SCHEDULED


def test_overlap_allowed_events_never_collide(manager):
    manager.create_event(PLAN, start=_at(10), end=_at(12))

    event = manager.create_event(PLAN, start=_at(11), end=_at(12), overlap_allowed=True)

    assert event.state == EventState.SCHEDULED


def test_inverted_interval_is_rejected(manager):
    event = manager.create_event(PLAN, start=_at(10), end=_at(11))

    with pytest.raises(ValidationError):
        manager.apply_edit(PLAN, event.event_id, _at(12), _at(11))
    with pytest.raises(ValidationError):
        manager.create_event(PLAN, start=_at(12), end=_at(12))


def test_stale_expected_version_is_a_conflict(manager):
    event = manager.create_event(PLAN, start=_at(10), end=_at(11))
    manager.apply_edit(PLAN, event.event_id, _at(10, 30), _at(11, 30))

    with pytest.raises(ConflictError):
        manager.apply_edit(PLAN, event.event_id, _at(15), _at(16), expected_version=event.version)


def test_conflicted_event_cannot_be_dragged_until_resolved(manager):
    museum = manager.create_event(PLAN, start=_at(10), end=_at(12))
    lunch = manager.create_event(PLAN, start=_at(13), end=_at(14))
    manager.apply_edit(PLAN, lunch.event_id, _at(11), _at(13), force=True)

    with pytest.raises(ConflictError):
        manager.apply_edit(PLAN, museum.event_id, _at(15), _at(16))

    resolved = manager.resolve_conflict(PLAN, museum.event_id, "custom", start=_at(15), end=_at(17))
    assert resolved.state == EventState.SCHEDULED
    assert resolved.conflict is None
    assert (resolved.start, resolved.end) == (_at(15), _at(17))


def test_resolving_with_the_server_value_keeps_the_overlap_check(manager):
    museum = manager.create_event(PLAN, start=_at(10), end=_at(12))
    lunch = manager.create_event(PLAN, start=_at(13), end=_at(14))
    manager.apply_edit(PLAN, lunch.event_id, _at(11), _at(13), force=True)

    with pytest.raises(OverlapError):
        manager.resolve_conflict(PLAN, museum.event_id, "server")

    cancelled = manager.resolve_conflict(PLAN, museum.event_id, "cancel")
    assert cancelled.state == EventState.CANCELLED


def test_mark_conflicted_merges_related_events(manager):
    event = manager.create_event(PLAN, start=_at(10), end=_at(11))
    manager.mark_conflicted(event, ConflictDetail(reason="displaced", fields=["start"], local={}, server={}, related_event_ids=["x"]))
    manager.mark_conflicted(event, ConflictDetail(reason="displaced", fields=["start"], local={}, server={}, related_event_ids=["y"]))

    assert event.state == EventState.CONFLICTED
    assert event.conflict.related_event_ids == ["x", "y"]


def test_soft_delete_and_restore(manager):
    event = manager.create_event(PLAN, start=_at(10), end=_at(11))

    deleted = manager.delete_event(PLAN, event.event_id)
    again = manager.delete_event(PLAN, event.event_id)

    assert deleted.state == EventState.CANCELLED
    assert again.version == deleted.version
    assert [e.event_id for e in manager.list_events(PLAN, EventState.CANCELLED)] == [event.event_id]

    restored = manager.restore_event(PLAN, event.event_id)
    assert restored.state == EventState.SCHEDULED
    with pytest.raises(InvalidTransitionError):
        manager.restore_event(PLAN, event.event_id)


def test_purge_removes_cancelled_events(manager, store):
    event = manager.create_event(PLAN, start=_at(10), end=_at(11))
    manager.delete_event(PLAN, event.event_id)

    assert manager.purge_cancelled(PLAN) == [event.event_id]
    assert store.get_event(PLAN, event.event_id) is None


def test_purge_keeps_events_an_open_conflict_refers_to(manager, store):
    museum = manager.create_event(PLAN, start=_at(10), end=_at(12))
    lunch = manager.create_event(PLAN, start=_at(13), end=_at(14))
    manager.apply_edit(PLAN, lunch.event_id, _at(11), _at(13), force=True)
    manager.delete_event(PLAN, lunch.event_id)

    assert manager.purge_cancelled(PLAN) == []
    assert store.get_event(PLAN, lunch.event_id) is not None
    assert manager.get_event(PLAN, museum.event_id).state == EventState.CONFLICTED


def test_proposals_follow_the_route_inside_day_windows(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0, minutes=120)
    _destination(store, "market", 35.0050, 135.7650, 1, minutes=90)
    _destination(store, "shrine", 34.9671, 135.7727, 2, fixed=DAY + timedelta(days=1), at=time(10, 0))
    route = RouteOptimizer(manager.cache).optimize(store.list_destinations(PLAN))

    proposals = manager.propose_from_route(PLAN, route, DAY)

    assert [event.destination_id for event in proposals] == route.destination_ids
    assert all(event.state == EventState.PROPOSED for event in proposals)
    assert proposals[0].start == _at(9)
    for earlier, later in zip(proposals, proposals[1:]):
        assert later.start >= earlier.end
    shrine = next(event for event in proposals if event.destination_id == "shrine")
    assert shrine.start == _at(10, day=DAY + timedelta(days=1))
    assert shrine.end - shrine.start == timedelta(minutes=60)


def test_re_proposing_replaces_earlier_proposals(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0)
    _destination(store, "market", 35.0050, 135.7650, 1)
    route = RouteOptimizer(manager.cache).optimize(store.list_destinations(PLAN))

    manager.propose_from_route(PLAN, route, DAY)
    manager.propose_from_route(PLAN, route, DAY)

    assert len(manager.list_events(PLAN)) == 2


def test_confirm_schedules_a_proposal(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0)
    _destination(store, "market", 35.0050, 135.7650, 1)
    route = RouteOptimizer(manager.cache).optimize(store.list_destinations(PLAN))
    proposal = manager.propose_from_route(PLAN, route, DAY)[0]

    confirmed = manager.confirm(PLAN, proposal.event_id)

    assert confirmed.state == EventState.SCHEDULED
    assert confirmed.version == proposal.version + 1


def test_cancel_destination_events_cascades(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0)
    event = manager.create_event(PLAN, start=_at(10), end=_at(11), destination_id="castle")

    cancelled = manager.cancel_destination_events(PLAN, "castle")

    assert [e.event_id for e in cancelled] == [event.event_id]
    assert manager.get_event(PLAN, event.event_id).state == EventState.CANCELLED


def test_offset_timestamps_are_compared_as_utc_against_proposals(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0)
    route = RouteOptimizer(manager.cache).optimize(store.list_destinations(PLAN))
    proposal = manager.propose_from_route(PLAN, route, DAY)[0]
    manager.confirm(PLAN, proposal.event_id)

    jst = timezone(timedelta(hours=9))
    with pytest.raises(OverlapError):
        # 18:30 JST is 09:30 UTC, inside the 09:00-10:00 proposal
        manager.create_event(
            PLAN, start=datetime.combine(DAY, time(18, 30), jst), end=datetime.combine(DAY, time(19, 0), jst)
        )

    later = manager.create_event(
        PLAN,
        start=datetime.combine(DAY, time(12, 0), timezone.utc),
        end=datetime.combine(DAY, time(13, 0), timezone.utc),
    )
    assert later.start == _at(12)
    assert later.start.tzinfo is None


def test_unreachable_anchor_is_proposed_after_the_previous_stop(manager, store):
    _destination(store, "castle", 35.0142, 135.7481, 0, minutes=120)
    _destination(store, "tea", 35.0050, 135.7650, 1, fixed=DAY, at=time(9, 30))
    route = RouteOptimizer(manager.cache).optimize(store.list_destinations(PLAN))
    assert route.destination_ids == ["castle", "tea"]

    castle, tea = manager.propose_from_route(PLAN, route, DAY)

    assert castle.start == _at(9)
    assert tea.start >= castle.end
    assert tea.end - tea.start == timedelta(minutes=60)

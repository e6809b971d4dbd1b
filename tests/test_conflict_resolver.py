import copy
from datetime import datetime

import pytest

from src.tabi.models.domain import (
    EVENT_MUTABLE_FIELDS,
    EventState,
    MutationKind,
    PendingMutation,
    ScheduleEvent,
)
from src.tabi.services.sync.resolver import Applied, ConflictResolver, Conflicted, Rejected

PLAN = "kyoto"


def _at(hour: int, minute: int = 0) -> datetime:
    return datetime(2026, 5, 1, hour, minute)


def _server_event(**changes) -> ScheduleEvent:
    event = ScheduleEvent(
        event_id="e1",
        plan_id=PLAN,
        start=_at(10),
        end=_at(11),
        title="Kinkaku-ji",
        state=EventState.SCHEDULED,
    )
    event.field_versions = {name: 1 for name in EVENT_MUTABLE_FIELDS}
    for name, value in changes.items():
        # Simulate one accepted server-side change per field
        setattr(event, name, value)
        event.version += 1
        event.field_versions[name] = event.version
    return event


def _update(base_version: int, key: str = "k1", **payload) -> PendingMutation:
    return PendingMutation(
        idempotency_key=key,
        op_kind=MutationKind.UPDATE,
        plan_id=PLAN,
        target_id="e1",
        payload=payload,
        base_version=base_version,
    )


@pytest.fixture
def resolver() -> ConflictResolver:
    return ConflictResolver()


def test_matching_base_version_applies_and_bumps(resolver):
    server = _server_event()
    before = copy.deepcopy(server)

    result = resolver.merge(_update(1, start=_at(12), end=_at(13)), server)

    assert isinstance(result, Applied)
    assert (result.event.start, result.event.end) == (_at(12), _at(13))
    assert result.event.version == 2
    assert result.event.field_versions["start"] == 2
    assert server == before


def test_disjoint_changes_are_merged(resolver):
    server = _server_event(title="Golden Pavilion")

    result = resolver.merge(_update(1, start=_at(12), end=_at(13)), server)

    assert isinstance(result, Applied)
    assert result.event.title == "Golden Pavilion"
    assert result.event.start == _at(12)
    assert result.event.version == server.version + 1


def test_same_field_changed_on_both_sides_conflicts_and_keeps_both_values(resolver):
    server = _server_event(start=_at(9, 30))

    result = resolver.merge(_update(1, start=_at(10, 15)), server)

    assert isinstance(result, Conflicted)
    assert result.event.state == EventState.CONFLICTED
    assert result.detail.reason == "concurrent_edit"
    assert result.detail.fields == ["start"]
    assert result.detail.local == {"start": _at(10, 15)}
    assert result.detail.server == {"start": _at(9, 30)}
    assert result.detail.base_version == 1
    assert result.detail.server_version == 2
    # Nothing was picked
    assert result.event.start == _at(9, 30)


def test_both_sides_setting_the_same_value_is_not_a_conflict(resolver):
    server = _server_event(title="Golden Pavilion")

    result = resolver.merge(_update(1, title="Golden Pavilion"), server)

    assert isinstance(result, Applied)


def test_disjoint_edits_that_invert_the_interval_conflict(resolver):
    server = _server_event(end=_at(10, 30))

    result = resolver.merge(_update(1, start=_at(10, 45)), server)

    assert isinstance(result, Conflicted)
    assert result.detail.fields == ["start", "end"]
    assert result.event.start == _at(10)


def test_current_base_edit_that_inverts_the_interval_is_rejected(resolver):
    server = _server_event()

    result = resolver.merge(_update(1, start=_at(12)), server)

    assert isinstance(result, Rejected)
    assert result.event is server


def test_update_to_already_conflicted_event_adds_a_candidate(resolver):
    server = _server_event(start=_at(9, 30))
    first = resolver.merge(_update(1, start=_at(10, 15)), server)

    second = resolver.merge(_update(first.event.version, key="k2", end=_at(12)), first.event)

    assert isinstance(second, Conflicted)
    assert second.detail.local == {"start": _at(10, 15), "end": _at(12)}
    assert second.detail.fields == ["end", "start"]
    assert second.event.version == first.event.version + 1


def test_base_version_ahead_of_server_is_rejected(resolver):
    result = resolver.merge(_update(5, start=_at(12)), _server_event())

    assert isinstance(result, Rejected)
    assert "ahead" in result.reason


def test_update_of_missing_event_is_rejected(resolver):
    assert isinstance(resolver.merge(_update(1, start=_at(12)), None), Rejected)


def test_update_of_deleted_event_is_rejected(resolver):
    server = _server_event()
    server.state = EventState.CANCELLED

    assert isinstance(resolver.merge(_update(1, start=_at(12)), server), Rejected)


def test_unknown_payload_field_is_rejected(resolver):
    result = resolver.merge(_update(1, version=99), _server_event())

    assert isinstance(result, Rejected)


def test_create_applies_iso_payload_as_scheduled_event(resolver):
    mutation = PendingMutation(
        idempotency_key="k1",
        op_kind=MutationKind.CREATE,
        plan_id=PLAN,
        target_id="e9",
        payload={"title": "Ramen", "start": "2026-05-01T12:00:00", "end": "2026-05-01T13:00:00"},
    )

    result = resolver.merge(mutation, None)

    assert isinstance(result, Applied)
    assert result.event.event_id == "e9"
    assert result.event.start == _at(12)
    assert result.event.version == 1
    assert result.event.state == EventState.SCHEDULED


def test_create_repeated_with_identical_fields_is_a_noop(resolver):
    mutation = PendingMutation(
        idempotency_key="k1",
        op_kind=MutationKind.CREATE,
        plan_id=PLAN,
        target_id="e1",
        payload={"title": "Kinkaku-ji", "start": _at(10), "end": _at(11)},
    )

    result = resolver.merge(mutation, _server_event())

    assert isinstance(result, Applied)
    assert result.noop


def test_create_over_a_different_existing_event_is_rejected(resolver):
    mutation = PendingMutation(
        idempotency_key="k1",
        op_kind=MutationKind.CREATE,
        plan_id=PLAN,
        target_id="e1",
        payload={"title": "Other", "start": _at(10), "end": _at(11)},
    )

    assert isinstance(resolver.merge(mutation, _server_event()), Rejected)


def test_delete_wins_over_concurrent_edits(resolver):
    server = _server_event(start=_at(9))
    mutation = PendingMutation(idempotency_key="k1", op_kind=MutationKind.DELETE, plan_id=PLAN, target_id="e1", base_version=1)

    result = resolver.merge(mutation, server)

    assert isinstance(result, Applied)
    assert result.event.state == EventState.CANCELLED
    assert result.event.version == server.version + 1


def test_deleting_a_deleted_event_is_a_noop(resolver):
    server = _server_event()
    server.state = EventState.CANCELLED
    mutation = PendingMutation(idempotency_key="k1", op_kind=MutationKind.DELETE, plan_id=PLAN, target_id="e1")

    result = resolver.merge(mutation, server)
    missing = resolver.merge(mutation, None)

    assert isinstance(result, Applied) and result.noop
    assert isinstance(missing, Applied) and missing.noop

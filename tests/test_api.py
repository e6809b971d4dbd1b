from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from src.tabi.main import create_app
from src.tabi.persistence.filesystem import FileStorage
from src.tabi.persistence.store import FilePlanStore
from src.tabi.services.engine import PlanningEngine, get_engine
from src.tabi.services.routing.distance_cache import DistanceCache

PLAN = "kyoto"


@pytest.fixture
def engine(tmp_path: Path):
    storage = FileStorage(root=tmp_path)
    engine = PlanningEngine(store=FilePlanStore(storage), cache=DistanceCache(None), storage=storage)
    yield engine
    engine.close()


@pytest.fixture
def api_client(engine: PlanningEngine):
    app = create_app()
    app.dependency_overrides[get_engine] = lambda: engine
    with TestClient(app) as client:
        yield client


def _add(client: TestClient, name: str, lat: float, lon: float, **extra) -> dict:
    response = client.post(
        f"/api/plans/{PLAN}/destinations",
        json={"name": name, "latitude": lat, "longitude": lon, **extra},
    )
    assert response.status_code == 201, response.text
    return response.json()


def test_health(api_client: TestClient):
    assert api_client.get("/api/health").json() == {"status": "ok"}
    directions = api_client.get("/api/health/directions").json()
    assert directions["configured"] is False
    assert directions["fallback"] == "haversine"


def test_route_and_schedule_flow(api_client: TestClient):
    _add(api_client, "Nijo Castle", 35.0142, 135.7481)
    _add(api_client, "Nishiki Market", 35.0050, 135.7650)
    _add(api_client, "Fushimi Inari", 34.9671, 135.7727, fixed_date="2026-05-02", fixed_time="09:30:00")

    route = api_client.post(f"/api/plans/{PLAN}/route", json={})
    assert route.status_code == 200, route.text
    body = route.json()
    assert len(body["ordered_destinations"]) == 3
    assert body["ordered_destinations"][-1]["name"] == "Fushimi Inari"
    assert all(leg["approximate"] for leg in body["legs"])

    schedule = api_client.post(f"/api/plans/{PLAN}/schedule", json={"start_date": "2026-05-01"})
    assert schedule.status_code == 200, schedule.text
    events = schedule.json()
    assert [event["state"] for event in events] == ["proposed"] * 3

    confirmed = api_client.post(f"/api/plans/{PLAN}/events/{events[0]['event_id']}/confirm")
    assert confirmed.json()["state"] == "scheduled"

    listed = api_client.get(f"/api/plans/{PLAN}/events", params={"state": "scheduled"}).json()
    assert [event["event_id"] for event in listed] == [events[0]["event_id"]]


def test_overlapping_edit_returns_409_with_conflicting_ids(api_client: TestClient):
    first = api_client.post(
        f"/api/plans/{PLAN}/events",
        json={"title": "Tea", "start": "2026-05-01T10:00:00", "end": "2026-05-01T11:00:00"},
    ).json()
    second = api_client.post(
        f"/api/plans/{PLAN}/events",
        json={"title": "Lunch", "start": "2026-05-01T12:00:00", "end": "2026-05-01T13:00:00"},
    ).json()

    response = api_client.patch(
        f"/api/plans/{PLAN}/events/{second['event_id']}",
        json={"start": "2026-05-01T10:30:00", "end": "2026-05-01T11:30:00"},
    )

    assert response.status_code == 409
    assert response.json()["detail"]["conflicting_event_ids"] == [first["event_id"]]

    forced = api_client.patch(
        f"/api/plans/{PLAN}/events/{second['event_id']}",
        json={"start": "2026-05-01T10:30:00", "end": "2026-05-01T11:30:00", "force": True},
    )
    assert forced.status_code == 200
    displaced = api_client.get(f"/api/plans/{PLAN}/events", params={"state": "conflicted"}).json()
    assert displaced[0]["event_id"] == first["event_id"]
    assert displaced[0]["conflict"]["reason"] == "displaced"

    resolved = api_client.post(
        f"/api/plans/{PLAN}/events/{first['event_id']}/resolve",
        json={"choice": "custom", "start": "2026-05-01T14:00:00", "end": "2026-05-01T15:00:00"},
    )
    assert resolved.status_code == 200
    assert resolved.json()["state"] == "scheduled"


def test_inverted_interval_is_a_bad_request(api_client: TestClient):
    response = api_client.post(
        f"/api/plans/{PLAN}/events",
        json={"start": "2026-05-01T12:00:00", "end": "2026-05-01T11:00:00"},
    )
    assert response.status_code == 400


def test_unknown_destination_is_404(api_client: TestClient):
    response = api_client.patch(f"/api/plans/{PLAN}/destinations/missing", json={"name": "x"})
    assert response.status_code == 404


def test_mutation_endpoint_is_idempotent(api_client: TestClient):
    payload = {
        "idempotency_key": "k1",
        "op_kind": "create",
        "target_id": "e1",
        "payload": {"title": "Gion walk", "start": "2026-05-01T18:00:00", "end": "2026-05-01T19:00:00"},
    }

    first = api_client.post(f"/api/plans/{PLAN}/mutations", json=payload).json()
    second = api_client.post(f"/api/plans/{PLAN}/mutations", json=payload).json()

    assert first["status"] == "applied" and first["noop"] is False
    assert second["status"] == "applied" and second["noop"] is True
    assert second["event"]["version"] == first["event"]["version"]


def test_concurrent_edit_conflict_returns_both_values(api_client: TestClient):
    api_client.post(
        f"/api/plans/{PLAN}/mutations",
        json={
            "idempotency_key": "k0",
            "op_kind": "create",
            "target_id": "e1",
            "payload": {"title": "Gion", "start": "2026-05-01T18:00:00", "end": "2026-05-01T19:00:00"},
        },
    )
    api_client.post(
        f"/api/plans/{PLAN}/mutations",
        json={
            "idempotency_key": "k-server",
            "op_kind": "update",
            "target_id": "e1",
            "base_version": 1,
            "payload": {"start": "2026-05-01T17:00:00"},
        },
    )

    response = api_client.post(
        f"/api/plans/{PLAN}/mutations",
        json={
            "idempotency_key": "k-phone",
            "op_kind": "update",
            "target_id": "e1",
            "base_version": 1,
            "payload": {"start": "2026-05-01T17:30:00"},
        },
    )

    body = response.json()
    assert body["status"] == "conflicted"
    assert body["conflict"]["local"] == {"start": "2026-05-01T17:30:00"}
    assert body["conflict"]["server"] == {"start": "2026-05-01T17:00:00"}


def test_offline_queue_endpoints(api_client: TestClient):
    api_client.post(
        f"/api/plans/{PLAN}/mutations",
        json={
            "idempotency_key": "k0",
            "op_kind": "create",
            "target_id": "e1",
            "payload": {"title": "Gion", "start": "2026-05-01T18:00:00", "end": "2026-05-01T19:00:00"},
        },
    )
    queued = api_client.post(
        "/api/devices/phone/queue",
        json={"plan_id": PLAN, "op_kind": "update", "target_id": "e1", "base_version": 1, "payload": {"title": "Pontocho"}},
    )
    assert queued.status_code == 201, queued.text
    assert queued.json()["local_id"] == 1

    queue = api_client.get("/api/devices/phone/queue").json()
    assert len(queue["pending"]) == 1

    report = api_client.post("/api/devices/phone/drain").json()
    assert report["applied"] == [queued.json()["idempotency_key"]]
    assert report["remaining"] == 0

    events = api_client.get(f"/api/plans/{PLAN}/events").json()
    assert events[0]["title"] == "Pontocho"


def test_capacity_error_is_a_bad_request(api_client: TestClient, engine: PlanningEngine):
    engine.routes.optimizer.max_destinations = 2
    for index in range(3):
        _add(api_client, f"stop {index}", 35.0 + index / 100, 135.7)

    response = api_client.post(f"/api/plans/{PLAN}/route", json={})

    assert response.status_code == 400
    assert "Split the plan" in response.json()["detail"]


def test_utc_timestamps_are_checked_against_confirmed_proposals(api_client: TestClient):
    _add(api_client, "Nijo Castle", 35.0142, 135.7481)
    _add(api_client, "Nishiki Market", 35.0050, 135.7650)
    proposals = api_client.post(f"/api/plans/{PLAN}/schedule", json={"start_date": "2026-05-01"}).json()
    confirmed = api_client.post(f"/api/plans/{PLAN}/events/{proposals[0]['event_id']}/confirm").json()

    clash = api_client.post(
        f"/api/plans/{PLAN}/events",
        json={"title": "Tea", "start": confirmed["start"] + "Z", "end": confirmed["end"] + "Z"},
    )
    assert clash.status_code == 409
    assert clash.json()["detail"]["conflicting_event_ids"] == [confirmed["event_id"]]

    created = api_client.post(
        f"/api/plans/{PLAN}/events",
        json={"title": "Tea", "start": "2026-05-02T10:00:00Z", "end": "2026-05-02T11:00:00+00:00"},
    )
    assert created.status_code == 201, created.text
    assert created.json()["start"] == "2026-05-02T10:00:00"

    mutation = api_client.post(
        f"/api/plans/{PLAN}/mutations",
        json={
            "idempotency_key": "k-utc",
            "op_kind": "create",
            "target_id": "walk",
            "payload": {"title": "Gion walk", "start": "2026-05-03T09:00:00Z", "end": "2026-05-03T10:00:00Z"},
        },
    )
    assert mutation.status_code == 200, mutation.text
    assert mutation.json()["status"] == "applied"
    assert mutation.json()["event"]["start"] == "2026-05-03T09:00:00"


def test_rejected_offline_mutation_blocks_its_event_until_acknowledged(api_client: TestClient):
    for key, title in (("bad", "Deleted already"), ("next", "Pontocho")):
        queued = api_client.post(
            "/api/devices/phone/queue",
            json={
                "idempotency_key": key,
                "plan_id": PLAN,
                "op_kind": "update",
                "target_id": "ghost",
                "base_version": 1,
                "payload": {"title": title},
            },
        )
        assert queued.status_code == 201, queued.text

    first = api_client.post("/api/devices/phone/drain").json()
    again = api_client.post("/api/devices/phone/drain").json()
    assert first["rejected"] == ["bad"]
    assert again["skipped"] == ["next"]

    queue = api_client.delete("/api/devices/phone/rejected/bad")
    assert queue.status_code == 200, queue.text
    assert queue.json()["rejected"] == []
    assert [m["idempotency_key"] for m in queue.json()["pending"]] == ["next"]

    assert api_client.delete("/api/devices/phone/rejected/bad").status_code == 404

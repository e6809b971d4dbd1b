"""Record <-> domain conversion shared by the file and Supabase stores."""

from __future__ import annotations

from dataclasses import asdict
from datetime import date, datetime, time
from typing import Any

from ..models.domain import (
    ConflictDetail,
    Destination,
    EventState,
    MutationKind,
    PendingMutation,
    ScheduleEvent,
    coerce_event_field,
)


def _iso(value: date | time | datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def encode_value(value: Any) -> Any:
    """JSON-safe form of a mutation payload or conflict candidate value."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    return value


def destination_to_record(destination: Destination) -> dict[str, Any]:
    record = asdict(destination)
    record["fixed_date"] = _iso(destination.fixed_date)
    record["fixed_time"] = _iso(destination.fixed_time)
    return record


def record_to_destination(row: dict[str, Any]) -> Destination:
    fixed_date = row.get("fixed_date")
    fixed_time = row.get("fixed_time")
    return Destination(
        destination_id=str(row["destination_id"]),
        plan_id=str(row["plan_id"]),
        name=row.get("name") or "",
        latitude=float(row["latitude"]),
        longitude=float(row["longitude"]),
        category=row.get("category"),
        fixed_date=date.fromisoformat(fixed_date) if isinstance(fixed_date, str) else fixed_date,
        fixed_time=time.fromisoformat(fixed_time) if isinstance(fixed_time, str) else fixed_time,
        visit_duration_min=int(row.get("visit_duration_min") or 60),
        order_index=row.get("order_index"),
    )


def conflict_to_record(conflict: ConflictDetail | None) -> dict[str, Any] | None:
    if conflict is None:
        return None
    return encode_value(asdict(conflict))


def record_to_conflict(row: dict[str, Any] | None) -> ConflictDetail | None:
    if not row:
        return None
    return ConflictDetail(
        reason=row["reason"],
        fields=list(row.get("fields") or []),
        local=dict(row.get("local") or {}),
        server=dict(row.get("server") or {}),
        base_version=row.get("base_version"),
        server_version=row.get("server_version"),
        related_event_ids=list(row.get("related_event_ids") or []),
    )


def event_to_record(event: ScheduleEvent) -> dict[str, Any]:
    return {
        "event_id": event.event_id,
        "plan_id": event.plan_id,
        "title": event.title,
        "destination_id": event.destination_id,
        "start": event.start.isoformat(),
        "end": event.end.isoformat(),
        "all_day": event.all_day,
        "overlap_allowed": event.overlap_allowed,
        "version": event.version,
        "state": event.state.value,
        "field_versions": dict(event.field_versions),
        "conflict": conflict_to_record(event.conflict),
    }


def record_to_event(row: dict[str, Any]) -> ScheduleEvent:
    return ScheduleEvent(
        event_id=str(row["event_id"]),
        plan_id=str(row["plan_id"]),
        title=row.get("title") or "",
        destination_id=row.get("destination_id"),
        start=coerce_event_field("start", row["start"]),
        end=coerce_event_field("end", row["end"]),
        all_day=bool(row.get("all_day", False)),
        overlap_allowed=bool(row.get("overlap_allowed", False)),
        version=int(row.get("version") or 1),
        state=EventState(row.get("state") or EventState.PROPOSED.value),
        field_versions={key: int(value) for key, value in (row.get("field_versions") or {}).items()},
        conflict=record_to_conflict(row.get("conflict")),
    )


def mutation_to_record(mutation: PendingMutation) -> dict[str, Any]:
    return {
        "local_id": mutation.local_id,
        "idempotency_key": mutation.idempotency_key,
        "op_kind": mutation.op_kind.value,
        "plan_id": mutation.plan_id,
        "target_id": mutation.target_id,
        "payload": encode_value(mutation.payload),
        "base_version": mutation.base_version,
        "client_timestamp": _iso(mutation.client_timestamp),
        "device_id": mutation.device_id,
    }


def record_to_mutation(row: dict[str, Any]) -> PendingMutation:
    timestamp = row.get("client_timestamp")
    return PendingMutation(
        local_id=row.get("local_id"),
        idempotency_key=str(row["idempotency_key"]),
        op_kind=MutationKind(row["op_kind"]),
        plan_id=str(row["plan_id"]),
        target_id=str(row["target_id"]),
        payload=dict(row.get("payload") or {}),
        base_version=row.get("base_version"),
        client_timestamp=datetime.fromisoformat(timestamp) if isinstance(timestamp, str) else timestamp,
        device_id=row.get("device_id"),
    )

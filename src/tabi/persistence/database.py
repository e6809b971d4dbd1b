"""Supabase persistence for destinations, schedule events and applied mutations."""

from __future__ import annotations

import logging
from typing import Any, Optional

from supabase import Client

from ..models.domain import Destination, ScheduleEvent
from .serializers import (
    destination_to_record,
    event_to_record,
    record_to_destination,
    record_to_event,
)

logger = logging.getLogger(__name__)

DESTINATIONS_TABLE = "destinations"
EVENTS_TABLE = "schedule_events"
MUTATIONS_TABLE = "applied_mutations"


class SupabasePlanStore:
    """PlanStore backed by Supabase tables keyed by plan id.

    Expected tables:
        destinations(destination_id pk, plan_id, name, latitude, longitude, category,
                     fixed_date, fixed_time, visit_duration_min, order_index)
        schedule_events(event_id pk, plan_id, title, destination_id, start, end, all_day,
                        overlap_allowed, version, state, field_versions jsonb, conflict jsonb)
        applied_mutations(idempotency_key pk, plan_id, record jsonb)
    """

    def __init__(self, client: Client) -> None:
        self.client = client

    def list_destinations(self, plan_id: str) -> list[Destination]:
        response = self.client.table(DESTINATIONS_TABLE).select("*").eq("plan_id", plan_id).execute()
        destinations = []
        for row in response.data or []:
            try:
                destinations.append(record_to_destination(row))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping invalid destination row in plan {plan_id}: {e}")
        return destinations

    def get_destination(self, plan_id: str, destination_id: str) -> Optional[Destination]:
        response = (
            self.client.table(DESTINATIONS_TABLE)
            .select("*")
            .eq("plan_id", plan_id)
            .eq("destination_id", destination_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return record_to_destination(rows[0]) if rows else None

    def save_destination(self, destination: Destination) -> None:
        self.client.table(DESTINATIONS_TABLE).upsert(destination_to_record(destination)).execute()

    def save_destination_order(self, plan_id: str, ordered_ids: list[str]) -> None:
        for index, destination_id in enumerate(ordered_ids):
            (
                self.client.table(DESTINATIONS_TABLE)
                .update({"order_index": index})
                .eq("plan_id", plan_id)
                .eq("destination_id", destination_id)
                .execute()
            )

    def delete_destination(self, plan_id: str, destination_id: str) -> None:
        (
            self.client.table(DESTINATIONS_TABLE)
            .delete()
            .eq("plan_id", plan_id)
            .eq("destination_id", destination_id)
            .execute()
        )

    def plans_using_coordinate(self, latitude: float, longitude: float, precision: int) -> set[str]:
        tolerance = 0.5 * 10 ** (-precision)
        response = (
            self.client.table(DESTINATIONS_TABLE)
            .select("plan_id")
            .gte("latitude", latitude - tolerance)
            .lte("latitude", latitude + tolerance)
            .gte("longitude", longitude - tolerance)
            .lte("longitude", longitude + tolerance)
            .execute()
        )
        return {str(row["plan_id"]) for row in (response.data or [])}

    def list_events(self, plan_id: str) -> list[ScheduleEvent]:
        response = self.client.table(EVENTS_TABLE).select("*").eq("plan_id", plan_id).execute()
        return [record_to_event(row) for row in (response.data or [])]

    def get_event(self, plan_id: str, event_id: str) -> Optional[ScheduleEvent]:
        response = (
            self.client.table(EVENTS_TABLE)
            .select("*")
            .eq("plan_id", plan_id)
            .eq("event_id", event_id)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return record_to_event(rows[0]) if rows else None

    def save_event(self, event: ScheduleEvent) -> None:
        self.client.table(EVENTS_TABLE).upsert(event_to_record(event)).execute()

    def delete_event(self, plan_id: str, event_id: str) -> None:
        self.client.table(EVENTS_TABLE).delete().eq("plan_id", plan_id).eq("event_id", event_id).execute()

    def get_mutation_record(self, plan_id: str, idempotency_key: str) -> Optional[dict[str, Any]]:
        response = (
            self.client.table(MUTATIONS_TABLE)
            .select("record")
            .eq("plan_id", plan_id)
            .eq("idempotency_key", idempotency_key)
            .limit(1)
            .execute()
        )
        rows = response.data or []
        return rows[0]["record"] if rows else None

    def save_mutation_record(self, plan_id: str, idempotency_key: str, record: dict[str, Any]) -> None:
        self.client.table(MUTATIONS_TABLE).upsert(
            {"idempotency_key": idempotency_key, "plan_id": plan_id, "record": record}
        ).execute()

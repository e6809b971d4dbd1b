"""Plan state storage: destinations, schedule events and applied-mutation records."""

from __future__ import annotations

import logging
import threading
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional, Protocol

from ..db.supabase import get_supabase_client
from ..models.domain import Destination, ScheduleEvent
from .filesystem import FileStorage
from .serializers import (
    destination_to_record,
    event_to_record,
    record_to_destination,
    record_to_event,
)

logger = logging.getLogger(__name__)


class PlanStore(Protocol):
    def list_destinations(self, plan_id: str) -> list[Destination]: ...

    def get_destination(self, plan_id: str, destination_id: str) -> Optional[Destination]: ...

    def save_destination(self, destination: Destination) -> None: ...

    def save_destination_order(self, plan_id: str, ordered_ids: list[str]) -> None: ...

    def delete_destination(self, plan_id: str, destination_id: str) -> None: ...

    def plans_using_coordinate(self, latitude: float, longitude: float, precision: int) -> set[str]: ...

    def list_events(self, plan_id: str) -> list[ScheduleEvent]: ...

    def get_event(self, plan_id: str, event_id: str) -> Optional[ScheduleEvent]: ...

    def save_event(self, event: ScheduleEvent) -> None: ...

    def delete_event(self, plan_id: str, event_id: str) -> None: ...

    def get_mutation_record(self, plan_id: str, idempotency_key: str) -> Optional[dict[str, Any]]: ...

    def save_mutation_record(self, plan_id: str, idempotency_key: str, record: dict[str, Any]) -> None: ...


class FilePlanStore:
    """One JSON document per plan under ``<data_root>/plans``."""

    def __init__(self, storage: FileStorage | None = None) -> None:
        self.storage = storage or FileStorage()
        self._lock = threading.RLock()

    def _path(self, plan_id: str) -> Path:
        return self.storage.path_for("plans", f"{plan_id}.json")

    def _load(self, plan_id: str) -> dict[str, Any]:
        document = self.storage.read_json(self._path(plan_id), default=None) or {}
        document.setdefault("plan_id", plan_id)
        document.setdefault("destinations", {})
        document.setdefault("events", {})
        document.setdefault("mutations", {})
        return document

    def _save(self, plan_id: str, document: dict[str, Any]) -> None:
        self.storage.write_json(self._path(plan_id), document)

    def list_destinations(self, plan_id: str) -> list[Destination]:
        with self._lock:
            rows = self._load(plan_id)["destinations"].values()
        return [record_to_destination(row) for row in rows]

    def get_destination(self, plan_id: str, destination_id: str) -> Optional[Destination]:
        with self._lock:
            row = self._load(plan_id)["destinations"].get(destination_id)
        return record_to_destination(row) if row else None

    def save_destination(self, destination: Destination) -> None:
        with self._lock:
            document = self._load(destination.plan_id)
            document["destinations"][destination.destination_id] = destination_to_record(destination)
            self._save(destination.plan_id, document)

    def save_destination_order(self, plan_id: str, ordered_ids: list[str]) -> None:
        with self._lock:
            document = self._load(plan_id)
            for index, destination_id in enumerate(ordered_ids):
                row = document["destinations"].get(destination_id)
                if row is not None:
                    row["order_index"] = index
            self._save(plan_id, document)

    def delete_destination(self, plan_id: str, destination_id: str) -> None:
        with self._lock:
            document = self._load(plan_id)
            if document["destinations"].pop(destination_id, None) is not None:
                self._save(plan_id, document)

    def plans_using_coordinate(self, latitude: float, longitude: float, precision: int) -> set[str]:
        target = (round(latitude, precision), round(longitude, precision))
        plans: set[str] = set()
        with self._lock:
            for path in sorted(self.storage.path_for("plans").glob("*.json")):
                document = self.storage.read_json(path, default={}) or {}
                for row in (document.get("destinations") or {}).values():
                    if (round(float(row["latitude"]), precision), round(float(row["longitude"]), precision)) == target:
                        plans.add(str(row["plan_id"]))
        return plans

    def list_events(self, plan_id: str) -> list[ScheduleEvent]:
        with self._lock:
            rows = self._load(plan_id)["events"].values()
        return [record_to_event(row) for row in rows]

    def get_event(self, plan_id: str, event_id: str) -> Optional[ScheduleEvent]:
        with self._lock:
            row = self._load(plan_id)["events"].get(event_id)
        return record_to_event(row) if row else None

    def save_event(self, event: ScheduleEvent) -> None:
        with self._lock:
            document = self._load(event.plan_id)
            document["events"][event.event_id] = event_to_record(event)
            self._save(event.plan_id, document)

    def delete_event(self, plan_id: str, event_id: str) -> None:
        with self._lock:
            document = self._load(plan_id)
            if document["events"].pop(event_id, None) is not None:
                self._save(plan_id, document)

    def get_mutation_record(self, plan_id: str, idempotency_key: str) -> Optional[dict[str, Any]]:
        with self._lock:
            return self._load(plan_id)["mutations"].get(idempotency_key)

    def save_mutation_record(self, plan_id: str, idempotency_key: str, record: dict[str, Any]) -> None:
        with self._lock:
            document = self._load(plan_id)
            document["mutations"][idempotency_key] = record
            self._save(plan_id, document)


@lru_cache()
def get_plan_store() -> PlanStore:
    """Supabase when credentials are configured, otherwise JSON files under the data root."""
    client = get_supabase_client()
    if client is not None:
        from .database import SupabasePlanStore

        return SupabasePlanStore(client)
    logger.info("Supabase not configured - plan state will be stored in local JSON files")
    return FilePlanStore()

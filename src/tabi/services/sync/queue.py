"""Durable per-device log of schedule mutations made while offline."""

from __future__ import annotations

import logging
import re
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from ...models.domain import PendingMutation
from ...persistence.filesystem import FileStorage
from ...persistence.serializers import mutation_to_record, record_to_mutation
from ..errors import DrainInProgressError, NotFoundError, ValidationError
from .resolver import Conflicted, MergeResult, Rejected

logger = logging.getLogger(__name__)

_DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_.-]{1,128}$")


@dataclass(slots=True)
class DrainReport:
    """Idempotency keys grouped by outcome. ``skipped`` entries stay queued."""

    device_id: str
    applied: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    rejected: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    remaining: int = 0
    error: Optional[str] = None


class SyncQueue:
    """Ordered mutations for one device, persisted at ``<data_root>/sync/<device_id>.json``.

    An entry leaves the queue only once the server applied it, recorded it as a
    conflict, or rejected it for good; rejected entries are kept in a separate
    list with their reason so nothing is lost silently. Until a rejection is
    acknowledged, later entries for the same target stay queued.
    """

    def __init__(self, device_id: str, storage: FileStorage | None = None) -> None:
        if not _DEVICE_ID_PATTERN.match(device_id or ""):
            raise ValidationError(f"Invalid device id: {device_id!r}")
        self.device_id = device_id
        self.storage = storage or FileStorage()
        self._path = self.storage.path_for("sync", f"{device_id}.json")
        self._lock = threading.RLock()
        self._drain_lock = threading.Lock()

        state = self.storage.read_json(self._path, default=None) or {}
        self._entries = [record_to_mutation(row) for row in state.get("entries", [])]
        self._rejected: list[dict[str, Any]] = list(state.get("rejected", []))
        self._next_local_id = int(state.get("next_local_id", 1))

    def enqueue(self, mutation: PendingMutation) -> PendingMutation:
        """Append ``mutation``; a key that is already queued returns the queued entry."""
        with self._lock:
            if mutation.idempotency_key:
                for queued in self._entries:
                    if queued.idempotency_key == mutation.idempotency_key:
                        return queued
            entry = replace(
                mutation,
                payload=dict(mutation.payload),
                idempotency_key=mutation.idempotency_key or uuid.uuid4().hex,
                device_id=self.device_id,
                local_id=self._next_local_id,
            )
            self._next_local_id += 1
            self._entries.append(entry)
            self._persist()
        logger.debug(f"Queued {entry.op_kind.value} of {entry.target_id} on device {self.device_id} as #{entry.local_id}")
        return entry

    def pending(self) -> list[PendingMutation]:
        with self._lock:
            return list(self._entries)

    def rejected(self) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(row) for row in self._rejected]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def draining(self) -> bool:
        return self._drain_lock.locked()

    def drain(
        self,
        apply_fn: Callable[[PendingMutation], MergeResult],
        already_applied: Callable[[PendingMutation], bool] | None = None,
    ) -> DrainReport:
        """Replay queued mutations in enqueue order through ``apply_fn``.

        A rejection blocks later mutations of the same target, in this and later
        drains, until it is acknowledged; other targets keep going. An exception
        from ``apply_fn`` stops the drain and leaves the current and later
        entries queued.
        """
        if not self._drain_lock.acquire(blocking=False):
            raise DrainInProgressError(self.device_id)
        try:
            report = DrainReport(device_id=self.device_id)
            blocked = self._blocked_targets()
            for mutation in self.pending():
                key = mutation.idempotency_key
                target = (mutation.plan_id, mutation.target_id)
                if target in blocked:
                    report.skipped.append(key)
                    continue
                if already_applied is not None and already_applied(mutation):
                    self._remove(key)
                    report.applied.append(key)
                    continue
                try:
                    result = apply_fn(mutation)
                except Exception as exc:
                    logger.warning(f"Drain of device {self.device_id} stopped at #{mutation.local_id}: {exc}")
                    report.error = str(exc)
                    break
                if isinstance(result, Rejected):
                    blocked.add(target)
                    self._reject(mutation, result.reason)
                    report.rejected.append(key)
                elif isinstance(result, Conflicted):
                    self._remove(key)
                    report.conflicted.append(key)
                else:
                    self._remove(key)
                    report.applied.append(key)
            report.remaining = len(self)
        finally:
            self._drain_lock.release()

        logger.info(
            f"Drained device {self.device_id}: {len(report.applied)} applied, {len(report.conflicted)} conflicted, "
            f"{len(report.rejected)} rejected, {report.remaining} remaining"
        )
        return report

    def acknowledge(self, idempotency_key: str) -> dict[str, Any]:
        """Drop a rejected entry, unblocking its target once no other rejection holds it."""
        with self._lock:
            for index, row in enumerate(self._rejected):
                if row["mutation"]["idempotency_key"] == idempotency_key:
                    removed = self._rejected.pop(index)
                    self._persist()
                    break
            else:
                raise NotFoundError("rejected mutation", idempotency_key)
        logger.info(f"Acknowledged rejected mutation {idempotency_key} on device {self.device_id}")
        return removed

    def _blocked_targets(self) -> set[tuple[str, str]]:
        with self._lock:
            return {(row["mutation"]["plan_id"], row["mutation"]["target_id"]) for row in self._rejected}

    def _remove(self, idempotency_key: str) -> None:
        with self._lock:
            self._entries = [entry for entry in self._entries if entry.idempotency_key != idempotency_key]
            self._persist()

    def _reject(self, mutation: PendingMutation, reason: str) -> None:
        logger.warning(f"Mutation #{mutation.local_id} on {mutation.target_id} rejected: {reason}")
        with self._lock:
            self._entries = [entry for entry in self._entries if entry.idempotency_key != mutation.idempotency_key]
            self._rejected.append({"mutation": mutation_to_record(mutation), "reason": reason})
            self._persist()

    def _persist(self) -> None:
        self.storage.write_json(
            self._path,
            {
                "device_id": self.device_id,
                "next_local_id": self._next_local_id,
                "entries": [mutation_to_record(entry) for entry in self._entries],
                "rejected": self._rejected,
            },
        )

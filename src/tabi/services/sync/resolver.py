"""Optimistic-concurrency merge of one pending mutation against the server's event."""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

from ...models.domain import (
    EVENT_MUTABLE_FIELDS,
    ConflictDetail,
    EventState,
    MutationKind,
    PendingMutation,
    ScheduleEvent,
    coerce_event_field,
)
from ..errors import ValidationError
from ..schedule.manager import bump_version, transition, validate_interval

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Applied:
    event: Optional[ScheduleEvent]
    noop: bool = False

    status = "applied"


@dataclass(slots=True)
class Conflicted:
    event: ScheduleEvent
    detail: ConflictDetail

    status = "conflicted"


@dataclass(slots=True)
class Rejected:
    reason: str
    event: Optional[ScheduleEvent] = None

    status = "rejected"


MergeResult = Union[Applied, Conflicted, Rejected]


def normalize_payload(payload: dict[str, Any]) -> dict[str, Any]:
    return {name: coerce_event_field(name, value) for name, value in payload.items()}


class ConflictResolver:
    """Classifies a mutation against the authoritative event.

    Never mutates ``server_event``; the returned event is a copy carrying the new
    version. When both sides changed the same field nothing is picked: the event
    becomes Conflicted and both candidate values travel in the ``ConflictDetail``.
    """

    def merge(self, mutation: PendingMutation, server_event: Optional[ScheduleEvent]) -> MergeResult:
        try:
            payload = normalize_payload(mutation.payload)
        except ValidationError as exc:
            return Rejected(reason=str(exc), event=server_event)

        if mutation.op_kind == MutationKind.DELETE:
            return self._merge_delete(server_event)
        if mutation.op_kind == MutationKind.CREATE:
            return self._merge_create(mutation, payload, server_event)
        return self._merge_update(mutation, payload, server_event)

    def _merge_delete(self, server_event: Optional[ScheduleEvent]) -> MergeResult:
        if server_event is None or server_event.state == EventState.CANCELLED:
            return Applied(event=server_event, noop=True)
        event = copy.deepcopy(server_event)
        # Deletion wins over whatever else is pending on the event.
        event.conflict = None
        transition(event, EventState.CANCELLED)
        bump_version(event)
        return Applied(event=event)

    def _merge_create(
        self,
        mutation: PendingMutation,
        payload: dict[str, Any],
        server_event: Optional[ScheduleEvent],
    ) -> MergeResult:
        if server_event is not None:
            same = all(getattr(server_event, name) == value for name, value in payload.items())
            if same and server_event.state != EventState.CANCELLED:
                return Applied(event=server_event, noop=True)
            return Rejected(reason=f"Event {mutation.target_id} already exists.", event=server_event)
        if "start" not in payload or "end" not in payload:
            return Rejected(reason="A created event needs start and end.")
        try:
            validate_interval(payload["start"], payload["end"])
        except ValidationError as exc:
            return Rejected(reason=str(exc))
        event = ScheduleEvent(
            event_id=mutation.target_id,
            plan_id=mutation.plan_id,
            state=EventState.SCHEDULED,
            **payload,
        )
        event.field_versions = {name: event.version for name in EVENT_MUTABLE_FIELDS}
        return Applied(event=event)

    def _merge_update(
        self,
        mutation: PendingMutation,
        payload: dict[str, Any],
        server_event: Optional[ScheduleEvent],
    ) -> MergeResult:
        if server_event is None:
            return Rejected(reason=f"Event {mutation.target_id} does not exist.")
        if server_event.state == EventState.CANCELLED:
            return Rejected(reason=f"Event {mutation.target_id} was deleted.", event=server_event)
        base = mutation.base_version
        if base is None:
            return Rejected(reason="Update is missing its base version.", event=server_event)
        if base > server_event.version:
            return Rejected(
                reason=f"Base version {base} is ahead of server version {server_event.version}.",
                event=server_event,
            )

        event = copy.deepcopy(server_event)
        if event.state == EventState.CONFLICTED and event.conflict is not None:
            # Still waiting on a human: add this edit as another local candidate.
            event.conflict.local.update(payload)
            event.conflict.fields = sorted(set(event.conflict.fields) | set(payload))
            bump_version(event)
            return Conflicted(event=event, detail=event.conflict)

        if base == server_event.version:
            result = self._apply(event, payload)
            if isinstance(result, Rejected):
                result.event = server_event
            return result

        changed_on_server = {name for name, version in server_event.field_versions.items() if version > base}
        overlapping = sorted(
            name for name in changed_on_server & set(payload) if getattr(server_event, name) != payload[name]
        )
        if not overlapping:
            logger.info(
                f"Auto-merged disjoint edits on event {event.event_id} "
                f"(local {sorted(payload)}, server {sorted(changed_on_server)})"
            )
            return self._apply(event, payload, base_version=base)
        detail = ConflictDetail(
            reason="concurrent_edit",
            fields=overlapping,
            local=dict(payload),
            server={name: getattr(server_event, name) for name in overlapping},
            base_version=base,
            server_version=server_event.version,
        )
        return self._conflict(event, detail)

    def _apply(self, event: ScheduleEvent, payload: dict[str, Any], base_version: int | None = None) -> MergeResult:
        previous = event.field_values()
        changed = [name for name, value in payload.items() if getattr(event, name) != value]
        for name in changed:
            setattr(event, name, payload[name])
        try:
            validate_interval(event.start, event.end)
        except ValidationError as exc:
            if base_version is None:
                return Rejected(reason=str(exc))
            # Each side's interval was valid alone; the combination is not.
            detail = ConflictDetail(
                reason="concurrent_edit",
                fields=["start", "end"],
                local=dict(payload),
                server={"start": previous["start"], "end": previous["end"]},
                base_version=base_version,
                server_version=event.version,
            )
            for name in changed:
                setattr(event, name, previous[name])
            return self._conflict(event, detail)
        if event.state == EventState.PROPOSED:
            transition(event, EventState.SCHEDULED)
        bump_version(event, changed)
        return Applied(event=event)

    def _conflict(self, event: ScheduleEvent, detail: ConflictDetail) -> Conflicted:
        transition(event, EventState.CONFLICTED)
        event.conflict = detail
        bump_version(event)
        logger.warning(f"Event {event.event_id} conflicted on {', '.join(detail.fields)}; awaiting manual resolution")
        return Conflicted(event=event, detail=detail)

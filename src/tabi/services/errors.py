"""Error taxonomy for the route and schedule engine."""

from __future__ import annotations

from typing import Iterable, Optional


class PlannerError(Exception):
    """Base class for engine errors."""


class ValidationError(PlannerError, ValueError):
    """Malformed input (bad coordinates, inverted intervals). Never retried."""


class NotFoundError(PlannerError, LookupError):
    def __init__(self, resource: str, resource_id: str) -> None:
        super().__init__(f"{resource} not found: {resource_id}")
        self.resource = resource
        self.resource_id = resource_id


class ExternalServiceError(PlannerError):
    """The directions provider failed or timed out after retries."""


class CapacityError(PlannerError):
    def __init__(self, count: int, limit: int) -> None:
        super().__init__(
            f"Plan has {count} destinations but route optimization is capped at {limit}. "
            f"Split the plan into smaller trips or day plans and optimize each separately."
        )
        self.count = count
        self.limit = limit


class OverlapError(PlannerError):
    """An edit would overlap other scheduled events; the caller decides."""

    def __init__(self, event_id: str, conflicting_event_ids: Iterable[str]) -> None:
        self.event_id = event_id
        self.conflicting_event_ids = sorted(conflicting_event_ids)
        super().__init__(
            f"Event {event_id} overlaps scheduled events: {', '.join(self.conflicting_event_ids)}"
        )


class ConflictError(PlannerError):
    """Divergent concurrent edits that need a human decision."""

    def __init__(self, message: str, detail: Optional[object] = None) -> None:
        super().__init__(message)
        self.detail = detail


class InvalidTransitionError(ValidationError):
    def __init__(self, event_id: str, current: str, target: str) -> None:
        super().__init__(f"Event {event_id} cannot move from {current} to {target}")
        self.current = current
        self.target = target


class OptimizationCancelled(PlannerError):
    """The destination set changed while the optimizer was running."""


class StaleRouteError(PlannerError):
    """Destinations kept changing while a route was being computed."""


class DrainInProgressError(PlannerError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"An offline queue drain is already running for device {device_id}")
        self.device_id = device_id

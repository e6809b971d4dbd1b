"""Translate engine errors into HTTP responses."""

from __future__ import annotations

import logging

from fastapi import HTTPException, status

from ..models.domain import ConflictDetail
from ..persistence.serializers import conflict_to_record, encode_value
from ..services.errors import (
    CapacityError,
    ConflictError,
    DrainInProgressError,
    NotFoundError,
    OptimizationCancelled,
    OverlapError,
    StaleRouteError,
    ValidationError,
)


def http_error(exc: Exception, action: str) -> HTTPException:
    """Map ``exc`` to an ``HTTPException``; unexpected errors are logged and become 500."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, OverlapError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "event_id": exc.event_id, "conflicting_event_ids": exc.conflicting_event_ids},
        )
    if isinstance(exc, ConflictError):
        conflict = exc.detail
        if isinstance(conflict, ConflictDetail):
            conflict = conflict_to_record(conflict)
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(exc), "conflict": encode_value(conflict)},
        )
    if isinstance(exc, (DrainInProgressError, StaleRouteError, OptimizationCancelled)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    if isinstance(exc, (ValidationError, CapacityError)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    logging.exception(f"Error while trying to {action}: {exc}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail=f"Failed to {action}: {str(exc)}",
    )

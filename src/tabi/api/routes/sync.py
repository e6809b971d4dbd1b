"""Schedule mutation and offline queue endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...schemas.sync import (
    DrainReportModel,
    MergeResultModel,
    MutationRequest,
    PendingMutationModel,
    QueuedMutationRequest,
    QueueModel,
)
from ...services.engine import PlanningEngine, get_engine
from ..errors import http_error

router = APIRouter(tags=["sync"])


@router.post("/plans/{plan_id}/mutations", response_model=MergeResultModel, status_code=status.HTTP_200_OK)
def apply_mutation(
    plan_id: str,
    payload: MutationRequest,
    engine: PlanningEngine = Depends(get_engine),
) -> MergeResultModel:
    """Merge one mutation against the server state.

    The outcome is ``applied``, ``conflicted`` (both candidate values returned)
    or ``rejected``; replaying the same idempotency key returns the first outcome.
    """
    try:
        result = engine.apply_schedule_mutation(plan_id, payload.to_domain(plan_id))
        return MergeResultModel.from_result(result)
    except Exception as exc:
        raise http_error(exc, "apply mutation") from exc


def _queue_model(engine: PlanningEngine, device_id: str) -> QueueModel:
    queue = engine.queue_for(device_id)
    return QueueModel(
        device_id=device_id,
        draining=queue.draining,
        pending=[PendingMutationModel.from_domain(m) for m in queue.pending()],
        rejected=queue.rejected(),
    )


@router.get("/devices/{device_id}/queue", response_model=QueueModel, status_code=status.HTTP_200_OK)
def get_queue(device_id: str, engine: PlanningEngine = Depends(get_engine)) -> QueueModel:
    try:
        return _queue_model(engine, device_id)
    except Exception as exc:
        raise http_error(exc, "read offline queue") from exc


@router.delete(
    "/devices/{device_id}/rejected/{idempotency_key}", response_model=QueueModel, status_code=status.HTTP_200_OK
)
def acknowledge_rejection(
    device_id: str,
    idempotency_key: str,
    engine: PlanningEngine = Depends(get_engine),
) -> QueueModel:
    """Acknowledge a rejected mutation so queued edits of its target drain again."""
    try:
        engine.acknowledge_rejection(device_id, idempotency_key)
        return _queue_model(engine, device_id)
    except Exception as exc:
        raise http_error(exc, "acknowledge rejected mutation") from exc


@router.post("/devices/{device_id}/queue", response_model=PendingMutationModel, status_code=status.HTTP_201_CREATED)
def enqueue_mutation(
    device_id: str,
    payload: QueuedMutationRequest,
    engine: PlanningEngine = Depends(get_engine),
) -> PendingMutationModel:
    try:
        mutation = payload.to_domain(payload.plan_id, device_id=device_id)
        return PendingMutationModel.from_domain(engine.enqueue_offline_mutation(payload.plan_id, mutation))
    except Exception as exc:
        raise http_error(exc, "enqueue mutation") from exc


@router.post("/devices/{device_id}/drain", response_model=DrainReportModel, status_code=status.HTTP_200_OK)
def drain_queue(device_id: str, engine: PlanningEngine = Depends(get_engine)) -> DrainReportModel:
    """Replay the device's queue now and report what happened to each entry."""
    try:
        return DrainReportModel.from_report(engine.drain_offline_queue(device_id))
    except Exception as exc:
        raise http_error(exc, "drain offline queue") from exc


@router.post("/devices/{device_id}/online", status_code=status.HTTP_202_ACCEPTED)
def device_online(device_id: str, engine: PlanningEngine = Depends(get_engine)) -> dict:
    """Connectivity came back: drain the device's queue in the background."""
    try:
        started = engine.on_connectivity_restored(device_id) is not None
        return {"device_id": device_id, "drain_started": started}
    except Exception as exc:
        raise http_error(exc, "start offline drain") from exc

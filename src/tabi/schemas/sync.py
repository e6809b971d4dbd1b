"""Mutation, merge result and offline queue schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..models.domain import MutationKind, PendingMutation
from ..persistence.serializers import encode_value
from ..services.sync.queue import DrainReport
from ..services.sync.resolver import Conflicted, MergeResult, Rejected
from .schedule import ConflictModel, EventModel


class MutationRequest(BaseModel):
    idempotency_key: str = Field(..., min_length=1)
    op_kind: MutationKind
    target_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    base_version: Optional[int] = Field(default=None, ge=1)
    client_timestamp: Optional[datetime] = None
    device_id: Optional[str] = None

    def to_domain(self, plan_id: str, device_id: Optional[str] = None) -> PendingMutation:
        return PendingMutation(
            idempotency_key=self.idempotency_key,
            op_kind=self.op_kind,
            plan_id=plan_id,
            target_id=self.target_id,
            payload=dict(self.payload),
            base_version=self.base_version,
            client_timestamp=self.client_timestamp,
            device_id=device_id or self.device_id,
        )


class QueuedMutationRequest(MutationRequest):
    plan_id: str
    idempotency_key: str = Field(default="", description="Assigned by the queue when empty.")


class MergeResultModel(BaseModel):
    status: str
    event: Optional[EventModel] = None
    conflict: Optional[ConflictModel] = None
    reason: Optional[str] = None
    noop: bool = False

    @classmethod
    def from_result(cls, result: MergeResult) -> "MergeResultModel":
        event = EventModel.from_domain(result.event) if result.event is not None else None
        if isinstance(result, Conflicted):
            return cls(status=result.status, event=event, conflict=ConflictModel.from_domain(result.detail))
        if isinstance(result, Rejected):
            return cls(status=result.status, event=event, reason=result.reason)
        return cls(status=result.status, event=event, noop=result.noop)


class PendingMutationModel(BaseModel):
    local_id: Optional[int] = None
    idempotency_key: str
    op_kind: MutationKind
    plan_id: str
    target_id: str
    payload: Dict[str, Any]
    base_version: Optional[int] = None
    client_timestamp: Optional[datetime] = None
    device_id: Optional[str] = None

    @classmethod
    def from_domain(cls, mutation: PendingMutation) -> "PendingMutationModel":
        return cls(
            local_id=mutation.local_id,
            idempotency_key=mutation.idempotency_key,
            op_kind=mutation.op_kind,
            plan_id=mutation.plan_id,
            target_id=mutation.target_id,
            payload=encode_value(mutation.payload),
            base_version=mutation.base_version,
            client_timestamp=mutation.client_timestamp,
            device_id=mutation.device_id,
        )


class QueueModel(BaseModel):
    device_id: str
    draining: bool
    pending: List[PendingMutationModel]
    rejected: List[Dict[str, Any]]


class DrainReportModel(BaseModel):
    device_id: str
    applied: List[str]
    conflicted: List[str]
    rejected: List[str]
    skipped: List[str]
    remaining: int
    error: Optional[str] = None

    @classmethod
    def from_report(cls, report: DrainReport) -> "DrainReportModel":
        return cls(
            device_id=report.device_id,
            applied=report.applied,
            conflicted=report.conflicted,
            rejected=report.rejected,
            skipped=report.skipped,
            remaining=report.remaining,
            error=report.error,
        )

"""Destination request/response schemas."""

from __future__ import annotations

from datetime import date, time
from typing import Optional

from pydantic import BaseModel, Field

from ..models.domain import Destination


class DestinationCreate(BaseModel):
    destination_id: Optional[str] = Field(default=None, description="Client-chosen id; generated when omitted.")
    name: str = Field(..., min_length=1)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    category: Optional[str] = None
    fixed_date: Optional[date] = Field(default=None, description="Makes the destination an anchor on this day.")
    fixed_time: Optional[time] = Field(default=None, description="Arrival time on the fixed date.")
    visit_duration_min: Optional[int] = Field(default=None, ge=1)


class DestinationUpdate(BaseModel):
    """Only the fields present in the request body are changed; null clears optional ones."""

    name: Optional[str] = Field(default=None, min_length=1)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    category: Optional[str] = None
    fixed_date: Optional[date] = None
    fixed_time: Optional[time] = None
    visit_duration_min: Optional[int] = Field(default=None, ge=1)


class DestinationModel(BaseModel):
    destination_id: str
    plan_id: str
    name: str
    latitude: float
    longitude: float
    category: Optional[str] = None
    fixed_date: Optional[date] = None
    fixed_time: Optional[time] = None
    visit_duration_min: int
    order_index: Optional[int] = None
    is_anchor: bool = False

    @classmethod
    def from_domain(cls, destination: Destination) -> "DestinationModel":
        return cls(
            destination_id=destination.destination_id,
            plan_id=destination.plan_id,
            name=destination.name,
            latitude=destination.latitude,
            longitude=destination.longitude,
            category=destination.category,
            fixed_date=destination.fixed_date,
            fixed_time=destination.fixed_time,
            visit_duration_min=destination.visit_duration_min,
            order_index=destination.order_index,
            is_anchor=destination.is_anchor,
        )

"""Health endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ...services.engine import PlanningEngine, get_engine
from ...services.routing.osrm_client import check_health

router = APIRouter(tags=["health"])


@router.get("/health", status_code=status.HTTP_200_OK)
def health_root() -> dict:
    """Simple health check endpoint that doesn't require any dependencies."""
    return {"status": "ok"}


@router.get("/health/directions", status_code=status.HTTP_200_OK)
def health_directions(engine: PlanningEngine = Depends(get_engine)) -> dict:
    """Report whether the directions provider answers, plus edge cache counters."""
    cache_stats = engine.cache.stats()
    if engine.cache.provider is None:
        return {"service": "osrm", "configured": False, "healthy": False, "fallback": "haversine", "cache": cache_stats}
    return {"service": "osrm", "configured": True, "healthy": check_health(), "cache": cache_stats}

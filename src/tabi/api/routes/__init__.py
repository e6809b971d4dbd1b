"""Route group exports."""

from . import destinations, health, routes, schedule, sync

__all__ = ["destinations", "health", "routes", "schedule", "sync"]

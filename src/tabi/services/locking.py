"""Per-plan mutation serialization."""

from __future__ import annotations

import threading


class PlanLocks:
    """One re-entrant lock per plan, created on first use.

    Holding a plan's lock serializes its overlap checks and version bumps;
    different plans never contend.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def for_plan(self, plan_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(plan_id)
            if lock is None:
                lock = self._locks[plan_id] = threading.RLock()
            return lock

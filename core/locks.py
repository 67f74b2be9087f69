"""
core/locks.py
-------------
Per-target-connection exclusive locks for migration runs.

A lock is held from just before the first mutating phase until cleanup.
Acquisition never waits: a second run for a locked target is rejected and
the caller decides whether to retry later. Locks older than
``lock_timeout_seconds`` are treated as abandoned and may be reclaimed.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass

from logger import get_logger

log = get_logger(__name__)


@dataclass(frozen=True)
class LockHolder:
    migration_id: str
    acquired_at: float


class MigrationLockManager:
    """
    Non-blocking exclusive locks keyed by target connection id.

    Example::

        locks = MigrationLockManager(lock_timeout_seconds=3600)
        if locks.try_acquire("target-db", "migration_1"):
            try:
                ...
            finally:
                locks.release("target-db", "migration_1")
    """

    def __init__(self, lock_timeout_seconds: float = 3600.0) -> None:
        self._timeout = lock_timeout_seconds
        self._holders: dict[str, LockHolder] = {}
        self._guard = threading.Lock()

    def try_acquire(self, target_id: str, migration_id: str) -> bool:
        """Take the lock for *target_id*; return False if another run holds it."""
        now = time.monotonic()
        with self._guard:
            holder = self._holders.get(target_id)
            if holder is not None and holder.migration_id != migration_id:
                if now - holder.acquired_at < self._timeout:
                    return False
                log.warning(
                    "Reclaiming expired lock on %s held by %s for %.0fs",
                    target_id, holder.migration_id, now - holder.acquired_at,
                )
            self._holders[target_id] = LockHolder(migration_id, now)
        log.debug("Lock on %s acquired by %s", target_id, migration_id)
        return True

    def release(self, target_id: str, migration_id: str) -> bool:
        """Release the lock if *migration_id* holds it. Returns whether it did."""
        with self._guard:
            holder = self._holders.get(target_id)
            if holder is None or holder.migration_id != migration_id:
                return False
            del self._holders[target_id]
        log.debug("Lock on %s released by %s", target_id, migration_id)
        return True

    def holder(self, target_id: str) -> str | None:
        """Migration id currently holding *target_id*, ignoring expired locks."""
        with self._guard:
            holder = self._holders.get(target_id)
        if holder is None or time.monotonic() - holder.acquired_at >= self._timeout:
            return None
        return holder.migration_id

    def __len__(self) -> int:
        return len(self._holders)

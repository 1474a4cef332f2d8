"""Per-resource mutual exclusion for operation execution."""

import logging
import threading

logger = logging.getLogger(__name__)


class ResourceLockManager:
    """Set of currently held resource keys.

    try_acquire is an atomic check-and-set: at most one holder per key.
    Locks are in-memory only; a restart releases everything and stale
    running operations are reconciled by the store.
    """

    def __init__(self):
        self._held: set[str] = set()
        self._lock = threading.Lock()

    def try_acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._held:
                return False
            self._held.add(key)
            logger.debug(f"Acquired lock {key}")
            return True

    def release(self, key: str) -> None:
        """Release a key. Releasing an unheld key is a no-op."""
        with self._lock:
            self._held.discard(key)
        logger.debug(f"Released lock {key}")

    def is_locked(self, key: str) -> bool:
        with self._lock:
            return key in self._held

    def held(self) -> list[str]:
        with self._lock:
            return sorted(self._held)

import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class _BatchLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class BatchLockManager:
    """
    Per-batch advisory locks.

    Mapping, validation, commit and rollback of the same batch are serialized
    so a commit never reads a validation result that is being superseded.
    Different batches never contend with each other.

    A batch's entry lives only while some caller holds or waits for it, so
    unknown ids and finished batches leave nothing behind.
    """

    def __init__(self):
        self._locks: Dict[str, _BatchLock] = {}
        self._global_lock = threading.Lock()

    def __len__(self) -> int:
        with self._global_lock:
            return len(self._locks)

    def is_tracked(self, batch_id: str) -> bool:
        with self._global_lock:
            return batch_id in self._locks

    def _checkout(self, batch_id: str) -> _BatchLock:
        with self._global_lock:
            entry = self._locks.get(batch_id)
            if entry is None:
                entry = self._locks[batch_id] = _BatchLock()
            entry.users += 1
            return entry

    def _checkin(self, batch_id: str, entry: _BatchLock) -> None:
        with self._global_lock:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(batch_id) is entry:
                del self._locks[batch_id]

    @contextmanager
    def acquire(self, batch_id: str):
        """Context manager to acquire and release a batch lock."""
        logger.debug("Attempting to acquire lock for batch '%s'", batch_id)
        entry = self._checkout(batch_id)
        try:
            entry.lock.acquire()
            logger.debug("Acquired lock for batch '%s'", batch_id)
            try:
                yield
            finally:
                entry.lock.release()
                logger.debug("Released lock for batch '%s'", batch_id)
        finally:
            self._checkin(batch_id, entry)

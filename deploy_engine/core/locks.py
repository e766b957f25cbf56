"""Per-application mutual exclusion."""

from contextlib import contextmanager
from threading import Lock
from typing import Dict, Iterator

from deploy_engine.core.errors import PipelineAlreadyRunning


class ApplicationLocks:
    """
    One explicit lock per application id.

    Acquisition never blocks: a caller that finds the lock held is told the
    application is busy instead of being queued behind the current holder.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._guard = Lock()

    def _lock_for(self, application_id: str) -> Lock:
        with self._guard:
            lock = self._locks.get(application_id)
            if lock is None:
                lock = Lock()
                self._locks[application_id] = lock
            return lock

    def try_acquire(self, application_id: str) -> bool:
        return self._lock_for(application_id).acquire(blocking=False)

    def release(self, application_id: str) -> None:
        lock = self._lock_for(application_id)
        if lock.locked():
            lock.release()

    def is_locked(self, application_id: str) -> bool:
        with self._guard:
            lock = self._locks.get(application_id)
        return bool(lock and lock.locked())

    def forget(self, application_id: str) -> None:
        """Drop the lock object of a removed application (must not be held)."""
        with self._guard:
            lock = self._locks.get(application_id)
            if lock is not None and not lock.locked():
                del self._locks[application_id]

    @contextmanager
    def hold(self, application_id: str) -> Iterator[None]:
        if not self.try_acquire(application_id):
            raise PipelineAlreadyRunning(
                f"An operation for {application_id} is already in progress"
            )
        try:
            yield
        finally:
            self.release(application_id)

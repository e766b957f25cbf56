# deploy_engine/infrastructure/memory/repository.py

from copy import deepcopy
from threading import Lock
from typing import Callable, Dict, Iterable, Optional

from deploy_engine.core.errors import (
    ApplicationAlreadyExists,
    ApplicationNotFound,
)
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus
from deploy_engine.core.repository import ApplicationRepository


class InMemoryApplicationRepository(ApplicationRepository):
    def __init__(self):
        self._store: Dict[str, ApplicationRecord] = {}
        self._record_locks: Dict[str, Lock] = {}
        self._lock = Lock()

    def create(self, record: ApplicationRecord) -> None:
        with self._lock:
            if record.application_id in self._store:
                raise ApplicationAlreadyExists(
                    f"Application {record.application_id} already exists"
                )
            self._store[record.application_id] = deepcopy(record)
            self._record_locks[record.application_id] = Lock()

    def get(self, application_id: str) -> Optional[ApplicationRecord]:
        record = self._store.get(application_id)
        return deepcopy(record) if record else None

    def list_all(self) -> Iterable[ApplicationRecord]:
        return [deepcopy(r) for r in list(self._store.values())]

    def list_by_status(
        self,
        status: ApplicationStatus,
        limit: int = 100,
    ) -> Iterable[ApplicationRecord]:
        results = []
        for r in list(self._store.values()):
            if r.status == status:
                results.append(deepcopy(r))
            if len(results) >= limit:
                break
        return results

    def modify(
        self,
        application_id: str,
        mutate: Callable[[ApplicationRecord], object],
    ) -> ApplicationRecord:
        record_lock = self._record_locks.get(application_id)
        if record_lock is None:
            raise ApplicationNotFound(f"Application {application_id} not found")

        with record_lock:
            stored = self._store.get(application_id)
            if stored is None:
                raise ApplicationNotFound(f"Application {application_id} not found")

            working = deepcopy(stored)
            mutate(working)
            working.version = stored.version + 1
            self._store[application_id] = working
            return deepcopy(working)

    def delete(self, application_id: str) -> bool:
        with self._lock:
            record_lock = self._record_locks.get(application_id)
            if record_lock is None:
                return False
            with record_lock:
                self._store.pop(application_id, None)
            self._record_locks.pop(application_id, None)
            return True

# deploy_engine/core/repository.py

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, TypeVar

from deploy_engine.core.models import ApplicationRecord, ApplicationStatus


T = TypeVar("T")


class ApplicationRepository(ABC):
    """
    Persistence contract for application records.
    """

    @abstractmethod
    def create(self, record: ApplicationRecord) -> None:
        """
        Persist a new record.
        Must fail if application_id already exists.
        """
        raise NotImplementedError

    @abstractmethod
    def get(self, application_id: str) -> Optional[ApplicationRecord]:
        """
        Fetch a detached copy of the record by ID.
        Returns None if not found.
        """
        raise NotImplementedError

    @abstractmethod
    def list_all(self) -> Iterable[ApplicationRecord]:
        raise NotImplementedError

    @abstractmethod
    def list_by_status(
        self,
        status: ApplicationStatus,
        limit: int = 100,
    ) -> Iterable[ApplicationRecord]:
        raise NotImplementedError

    @abstractmethod
    def modify(
        self,
        application_id: str,
        mutate: Callable[[ApplicationRecord], T],
    ) -> ApplicationRecord:
        """
        Atomic read-modify-write of a single record.

        `mutate` receives the current record and changes it in place; the
        result is persisted with the version bumped. Writers of different
        records never block each other.
        Raises ApplicationNotFound if the record does not exist.
        """
        raise NotImplementedError

    @abstractmethod
    def delete(self, application_id: str) -> bool:
        """
        Remove a record. Returns False if it did not exist.
        """
        raise NotImplementedError

    def find_by_source(self, source_location: str) -> Optional[ApplicationRecord]:
        for record in self.list_all():
            if record.source_location == source_location:
                return record
        return None

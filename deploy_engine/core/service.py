"""Status service - the single writer of application state."""

import logging
from typing import Any

from deploy_engine.core.errors import ApplicationNotFound, ApplicationValidationError
from deploy_engine.core.events_model import ApplicationEvent
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus, utcnow
from deploy_engine.core.repository import ApplicationRepository
from deploy_engine.core.state_machine import ApplicationStateMachine

logger = logging.getLogger(__name__)


# Fields that may never be changed through update()/transition() keyword arguments.
_PROTECTED_FIELDS = {"application_id", "status", "version", "created_at"}


class StatusService:
    """
    Mutates application records through the state machine.

    Every write is a per-record read-modify-write on the repository, so
    concurrent pipelines for different applications never serialize on a
    shared lock and never overwrite each other's fields.
    """

    def __init__(self, repository: ApplicationRepository, event_emitters):
        self._repo = repository
        self._emitters = event_emitters

    # -------------------------
    # REGISTER
    # -------------------------

    def register(self, record: ApplicationRecord) -> None:
        self._repo.create(record)
        logger.info(f"[status] registered {record.application_id} ({record.name})")
        self.log(record.application_id, f"Application {record.name} registered", "system")

    # -------------------------
    # READ
    # -------------------------

    def get(self, application_id: str):
        return self._repo.get(application_id)

    def require(self, application_id: str) -> ApplicationRecord:
        record = self._repo.get(application_id)
        if not record:
            raise ApplicationNotFound(f"Application {application_id} not found")
        return record

    # -------------------------
    # WRITE
    # -------------------------

    def transition(
        self,
        application_id: str,
        new_status: ApplicationStatus,
        **changes: Any,
    ) -> ApplicationRecord:
        """Move to `new_status` and apply field changes in one atomic write."""
        _check_fields(changes)
        previous = {}

        def mutate(record: ApplicationRecord):
            previous["status"] = record.status
            ApplicationStateMachine.transition(record, new_status)
            _apply(record, changes)

        record = self._repo.modify(application_id, mutate)

        if previous["status"] != record.status:
            logger.info(
                f"[status] {application_id}: {previous['status'].value} -> {record.status.value}"
            )
            self._emit([ApplicationEvent.status_changed(record, previous["status"])])

        return record

    def update(self, application_id: str, **changes: Any) -> ApplicationRecord:
        """Change non-status fields."""
        _check_fields(changes)
        return self._repo.modify(application_id, lambda record: _apply(record, changes))

    def remove(self, application_id: str) -> bool:
        removed = self._repo.delete(application_id)
        if removed:
            logger.info(f"[status] removed {application_id}")
            self._emit([ApplicationEvent.removed(application_id)])
        return removed

    # -------------------------
    # LOGS
    # -------------------------

    def log(self, application_id: str, message: str, level: str = "info") -> None:
        self._emit([ApplicationEvent.log(application_id, message, level)])

    def _emit(self, events):
        """Emit events via emitters."""
        self._emitters.emit(events)


def _check_fields(changes):
    protected = _PROTECTED_FIELDS.intersection(changes)
    if protected:
        raise ApplicationValidationError(
            f"Fields cannot be changed directly: {', '.join(sorted(protected))}"
        )


def _apply(record: ApplicationRecord, changes) -> None:
    for key, value in changes.items():
        if not hasattr(record, key):
            raise ApplicationValidationError(f"Unknown application field: {key}")
        setattr(record, key, value)
    record.updated_at = utcnow()

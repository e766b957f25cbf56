#deploy_engine\core\state_machine.py

from datetime import datetime
from deploy_engine.core.errors import InvalidStateTransition
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus, utcnow


ALLOWED_TRANSITIONS = {
    ApplicationStatus.IDLE: {
        ApplicationStatus.IMPORTING,
    },
    ApplicationStatus.IMPORTING: {
        ApplicationStatus.IMPORTED,
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.IMPORTED: {
        ApplicationStatus.IMPORTING,
        ApplicationStatus.BUILDING,
        ApplicationStatus.INSTALLING,
    },
    ApplicationStatus.BUILDING: {
        ApplicationStatus.INSTALLING,
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.INSTALLING: {
        ApplicationStatus.SUCCESS,
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.SUCCESS: {
        ApplicationStatus.BUILDING,
        ApplicationStatus.INSTALLING,
        ApplicationStatus.STARTING,
        ApplicationStatus.STOPPING,
    },
    ApplicationStatus.STARTING: {
        ApplicationStatus.SUCCESS,
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.STOPPING: {
        ApplicationStatus.SUCCESS,
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.UNINSTALLING: {
        ApplicationStatus.ERROR,
    },
    ApplicationStatus.ERROR: {
        ApplicationStatus.IMPORTING,
        ApplicationStatus.BUILDING,
        ApplicationStatus.INSTALLING,
        ApplicationStatus.STARTING,
        ApplicationStatus.STOPPING,
    },
}

# Removal may be requested from anywhere; a successful uninstall deletes the record.
for _targets in ALLOWED_TRANSITIONS.values():
    _targets.add(ApplicationStatus.UNINSTALLING)


def can_transition(current: ApplicationStatus, new_state: ApplicationStatus) -> bool:
    if current == new_state:
        return True
    return new_state in ALLOWED_TRANSITIONS.get(current, set())


class ApplicationStateMachine:
    @staticmethod
    def transition(
        record: ApplicationRecord,
        new_state: ApplicationStatus,
        *,
        now: datetime | None = None,
    ) -> ApplicationRecord:
        now = now or utcnow()

        current = record.status

        if current == new_state:
            return record

        allowed = ALLOWED_TRANSITIONS.get(current, set())
        if new_state not in allowed:
            raise InvalidStateTransition(
                f"Cannot transition {record.application_id} from {current.value} to {new_state.value}"
            )

        # Timestamp semantics
        if new_state == ApplicationStatus.SUCCESS and current == ApplicationStatus.INSTALLING:
            record.last_build_time = now

        record.status = new_state
        record.updated_at = now
        return record

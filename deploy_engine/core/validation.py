#deploy_engine\core\validation.py
from deploy_engine.core.models import (
    ApplicationRecord,
    ApplicationStatus,
    MIN_AUTO_UPDATE_INTERVAL_MINUTES,
    SourceKind,
)
from deploy_engine.core.errors import ApplicationValidationError


def validate_auto_update_interval(minutes: int) -> None:
    if minutes < MIN_AUTO_UPDATE_INTERVAL_MINUTES:
        raise ApplicationValidationError(
            f"auto_update_interval_minutes must be at least {MIN_AUTO_UPDATE_INTERVAL_MINUTES}"
        )


def validate_new_application(record: ApplicationRecord) -> None:
    # -------------------------
    # Identity
    # -------------------------
    if not record.application_id:
        raise ApplicationValidationError("application_id is required")

    if not record.name:
        raise ApplicationValidationError("name is required")

    # -------------------------
    # Source
    # -------------------------
    if record.source_kind == SourceKind.SOURCE_CONTROLLED and not record.source_location:
        raise ApplicationValidationError(
            "source_location is required for source-controlled applications"
        )

    if record.source_kind == SourceKind.DESCRIPTOR_ONLY and record.source_location:
        raise ApplicationValidationError(
            "descriptor-only applications have no source_location"
        )

    # -------------------------
    # Lifecycle invariants
    # -------------------------
    if record.status != ApplicationStatus.IDLE:
        raise ApplicationValidationError(
            "new application must start in IDLE state"
        )

    if record.installed or record.running:
        raise ApplicationValidationError(
            "new application cannot be installed or running"
        )

    if record.current_version or record.latest_version:
        raise ApplicationValidationError(
            "version markers must not be set at creation"
        )

    validate_auto_update_interval(record.auto_update_interval_minutes)

    # -------------------------
    # Versioning
    # -------------------------
    if record.version != 0:
        raise ApplicationValidationError(
            "new application version must be 0"
        )

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deploy_engine.core.models import ApplicationRecord


class ImportRequest(BaseModel):
    source_location: str
    auto_update: bool = False
    interval: Optional[int] = None


class DescriptorImportRequest(BaseModel):
    descriptor: str
    name: Optional[str] = None


class DescriptorBody(BaseModel):
    descriptor: str


class PipelineRequest(BaseModel):
    transfer_environment: bool = True
    run_pre_install_hook: bool = True
    force_delete_existing_data: bool = False
    run_as_user: Optional[str] = None


class AutoUpdateRequest(BaseModel):
    enabled: bool
    interval: Optional[int] = None


class ApplicationResponse(BaseModel):
    application_id: str
    name: str
    display_name: Optional[str]
    source_kind: str
    source_location: Optional[str]
    status: str
    status_message: Optional[str]
    installed: bool
    running: bool
    auto_update: bool
    auto_update_interval_minutes: int
    current_version: Optional[str]
    latest_version: Optional[str]
    update_available: bool
    last_update_check: Optional[datetime]
    icon: Optional[str]
    last_build_time: Optional[datetime]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_record(cls, record: ApplicationRecord) -> "ApplicationResponse":
        return cls(
            application_id=record.application_id,
            name=record.name,
            display_name=record.display_name,
            source_kind=record.source_kind.value,
            source_location=record.source_location,
            status=record.status.value,
            status_message=record.status_message,
            installed=record.installed,
            running=record.running,
            auto_update=record.auto_update,
            auto_update_interval_minutes=record.auto_update_interval_minutes,
            current_version=record.current_version,
            latest_version=record.latest_version,
            update_available=record.update_available(),
            last_update_check=record.last_update_check,
            icon=record.icon,
            last_build_time=record.last_build_time,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


class DescriptorResponse(BaseModel):
    application_id: str
    descriptor: Optional[str]


class ActionResponse(BaseModel):
    success: bool
    message: str
    already_running: bool = False


class ReconcileResponse(BaseModel):
    structurally_changed: bool
    transfer_map: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    warnings: List[str] = Field(default_factory=list)
    diff: List[str] = Field(default_factory=list)


class UpdateCheckResponse(BaseModel):
    application_id: str
    current_version: Optional[str]
    latest_version: Optional[str]
    update_available: bool


class LogEntry(BaseModel):
    event_type: str
    application_id: str
    timestamp: Any
    level: str
    message: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

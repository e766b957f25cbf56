"""Core domain models (business logic)."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


MIN_AUTO_UPDATE_INTERVAL_MINUTES = 5


class SourceKind(Enum):
    """Where an application definition comes from."""

    SOURCE_CONTROLLED = "SOURCE_CONTROLLED"
    DESCRIPTOR_ONLY = "DESCRIPTOR_ONLY"


class ApplicationStatus(Enum):
    """Application lifecycle state machine."""

    IDLE = "IDLE"
    IMPORTING = "IMPORTING"
    IMPORTED = "IMPORTED"
    BUILDING = "BUILDING"
    INSTALLING = "INSTALLING"
    SUCCESS = "SUCCESS"
    STARTING = "STARTING"
    STOPPING = "STOPPING"
    UNINSTALLING = "UNINSTALLING"
    ERROR = "ERROR"


TRANSIENT_STATUSES = frozenset({
    ApplicationStatus.IMPORTING,
    ApplicationStatus.BUILDING,
    ApplicationStatus.INSTALLING,
    ApplicationStatus.STARTING,
    ApplicationStatus.STOPPING,
    ApplicationStatus.UNINSTALLING,
})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ApplicationRecord:
    """Application record tracked by the orchestrator."""

    # Identity
    application_id: str
    name: str
    source_kind: SourceKind
    source_location: Optional[str] = None
    display_name: Optional[str] = None

    # State
    status: ApplicationStatus = ApplicationStatus.IDLE
    status_message: Optional[str] = None
    installed: bool = False
    running: bool = False

    # Auto update
    auto_update: bool = False
    auto_update_interval_minutes: int = 60
    current_version: Optional[str] = None
    latest_version: Optional[str] = None
    last_update_check: Optional[datetime] = None

    # Descriptors
    raw_descriptor: Optional[str] = None
    working_descriptor: Optional[str] = None

    icon: Optional[str] = None
    last_build_time: Optional[datetime] = None

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    # Optimistic concurrency
    version: int = 0

    def __post_init__(self):
        if not self.display_name:
            self.display_name = self.name

    @property
    def is_source_controlled(self) -> bool:
        return self.source_kind == SourceKind.SOURCE_CONTROLLED

    @property
    def is_transient(self) -> bool:
        return self.status in TRANSIENT_STATUSES

    def update_available(self) -> bool:
        """Version markers are opaque; only equality is meaningful."""
        if self.current_version is None or self.latest_version is None:
            return False
        return self.current_version != self.latest_version

"""Event models for the deploy engine."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


LOG_LEVELS = ("system", "info", "warning", "error", "success")


@dataclass
class ApplicationEvent:
    """Base application event."""

    event_type: str
    application_id: str
    timestamp: datetime
    level: str = "info"
    message: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def log(application_id: str, message: str, level: str = "info"):
        """Pipeline log line."""
        return ApplicationEvent(
            event_type="application.log",
            application_id=application_id,
            timestamp=datetime.now(timezone.utc),
            level=level,
            message=message,
        )

    @staticmethod
    def status_changed(record, previous):
        """Status changed event."""
        return ApplicationEvent(
            event_type="application.status_changed",
            application_id=record.application_id,
            timestamp=datetime.now(timezone.utc),
            level="system",
            message=f"{previous.value} -> {record.status.value}",
            metadata={
                "previous": previous.value,
                "status": record.status.value,
                "installed": record.installed,
                "running": record.running,
            }
        )

    @staticmethod
    def removed(application_id: str):
        """Application record removed event."""
        return ApplicationEvent(
            event_type="application.removed",
            application_id=application_id,
            timestamp=datetime.now(timezone.utc),
            level="system",
            message="Application removed",
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_type": self.event_type,
            "application_id": self.application_id,
            "timestamp": self.timestamp.isoformat(),
            "level": self.level,
            "message": self.message,
            "metadata": self.metadata,
        }

#deploy_engine\infrastructure\sql\models.py
"""SQLAlchemy ORM models for database tables."""

from sqlalchemy import (
    Boolean, Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text, UniqueConstraint
)

from deploy_engine.core.models import ApplicationStatus, SourceKind, utcnow
from deploy_engine.infrastructure.sql.database import Base


# ============================================
# APPLICATIONS
# ============================================

class ApplicationORM(Base):
    """
    Application table - one row per managed application.

    Descriptors are stored as text exactly as written.
    """

    __tablename__ = "applications"

    application_id = Column(String(100), primary_key=True)
    name = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False, index=True)

    source_kind = Column(SQLEnum(SourceKind, name="source_kind"), nullable=False)
    source_location = Column(String(1000), nullable=True, index=True)

    status = Column(
        SQLEnum(ApplicationStatus, name="application_status"),
        nullable=False,
        default=ApplicationStatus.IDLE,
        index=True,
    )
    status_message = Column(Text, nullable=True)
    installed = Column(Boolean, nullable=False, default=False)
    running = Column(Boolean, nullable=False, default=False)

    auto_update = Column(Boolean, nullable=False, default=False)
    auto_update_interval_minutes = Column(Integer, nullable=False, default=60)
    current_version = Column(String(255), nullable=True)
    latest_version = Column(String(255), nullable=True)
    last_update_check = Column(DateTime(timezone=True), nullable=True)

    raw_descriptor = Column(Text, nullable=True)
    working_descriptor = Column(Text, nullable=True)

    icon = Column(String(1000), nullable=True)
    last_build_time = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Optimistic concurrency
    version = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("ix_applications_auto_update", "auto_update", "status"),
    )

    def __repr__(self) -> str:
        return (
            f"<ApplicationORM(application_id={self.application_id}, "
            f"status={self.status.value if self.status else None})>"
        )


# ============================================
# CAPABILITY TOKENS
# ============================================

class AppTokenORM(Base):
    """Capability tokens issued to deployed applications."""

    __tablename__ = "app_tokens"

    id = Column(Integer, primary_key=True, autoincrement=True)
    app_name = Column(String(255), nullable=False)
    source_id = Column(String(100), nullable=False, index=True)
    token = Column(String(128), nullable=False, unique=True, index=True)
    permissions = Column(JSON, nullable=False, default=list)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_used = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("app_name", "source_id", name="uq_app_tokens_app_source"),
    )

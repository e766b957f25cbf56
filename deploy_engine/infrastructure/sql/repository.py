#deploy_engine\infrastructure\sql\repository.py

"""SQL repository implementations using SQLAlchemy."""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from deploy_engine.core.errors import (
    ApplicationAlreadyExists,
    ApplicationConcurrencyError,
    ApplicationNotFound,
)
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus
from deploy_engine.core.repository import ApplicationRepository
from deploy_engine.infrastructure.sql.database import get_session_factory
from deploy_engine.infrastructure.sql.models import ApplicationORM, AppTokenORM
from deploy_engine.orchestrator.tokens import CapabilityToken, TokenStore

logger = logging.getLogger(__name__)


# ============================================
# Mapping Functions
# ============================================

def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def orm_to_domain(orm: ApplicationORM) -> ApplicationRecord:
    """Convert ORM model to domain model."""
    return ApplicationRecord(
        application_id=orm.application_id,
        name=orm.name,
        source_kind=orm.source_kind,
        source_location=orm.source_location,
        display_name=orm.display_name,
        status=orm.status,
        status_message=orm.status_message,
        installed=orm.installed,
        running=orm.running,
        auto_update=orm.auto_update,
        auto_update_interval_minutes=orm.auto_update_interval_minutes,
        current_version=orm.current_version,
        latest_version=orm.latest_version,
        last_update_check=_aware(orm.last_update_check),
        raw_descriptor=orm.raw_descriptor,
        working_descriptor=orm.working_descriptor,
        icon=orm.icon,
        last_build_time=_aware(orm.last_build_time),
        created_at=_aware(orm.created_at),
        updated_at=_aware(orm.updated_at),
        version=orm.version,
    )


def domain_to_orm(record: ApplicationRecord) -> ApplicationORM:
    """Convert domain model to ORM model."""
    return ApplicationORM(
        application_id=record.application_id,
        name=record.name,
        source_kind=record.source_kind,
        source_location=record.source_location,
        display_name=record.display_name or record.name,
        status=record.status,
        status_message=record.status_message,
        installed=record.installed,
        running=record.running,
        auto_update=record.auto_update,
        auto_update_interval_minutes=record.auto_update_interval_minutes,
        current_version=record.current_version,
        latest_version=record.latest_version,
        last_update_check=record.last_update_check,
        raw_descriptor=record.raw_descriptor,
        working_descriptor=record.working_descriptor,
        icon=record.icon,
        last_build_time=record.last_build_time,
        created_at=record.created_at,
        updated_at=record.updated_at,
        version=record.version,
    )


_MUTABLE_COLUMNS = (
    "name", "source_kind", "source_location", "display_name",
    "status", "status_message", "installed", "running",
    "auto_update", "auto_update_interval_minutes",
    "current_version", "latest_version", "last_update_check",
    "raw_descriptor", "working_descriptor", "icon", "last_build_time",
    "updated_at",
)


def _copy_onto(orm: ApplicationORM, record: ApplicationRecord) -> None:
    for column in _MUTABLE_COLUMNS:
        setattr(orm, column, getattr(record, column))


# ============================================
# Application Repository
# ============================================

class SqlApplicationRepository(ApplicationRepository):
    """SQLAlchemy implementation with dependency injection."""

    def __init__(self, session_factory: Optional[sessionmaker] = None):
        """
        Args:
            session_factory: SQLAlchemy session factory. If None, uses the default engine.
        """
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    # -------------------------
    # CREATE
    # -------------------------

    def create(self, record: ApplicationRecord) -> None:
        session = self._get_session()
        try:
            session.add(domain_to_orm(record))
            session.commit()
            logger.debug(f"[sql] create {record.application_id} -> done")
        except IntegrityError as e:
            session.rollback()
            raise ApplicationAlreadyExists(
                f"Application {record.application_id} already exists"
            ) from e
        except SQLAlchemyError as e:
            session.rollback()
            raise ApplicationConcurrencyError(f"Failed to create application: {e}") from e
        finally:
            session.close()

    # -------------------------
    # READ
    # -------------------------

    def get(self, application_id: str) -> Optional[ApplicationRecord]:
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, application_id)
            if orm is None:
                return None
            return orm_to_domain(orm)
        finally:
            session.close()

    def list_all(self) -> Iterable[ApplicationRecord]:
        session = self._get_session()
        try:
            rows = session.query(ApplicationORM).order_by(ApplicationORM.created_at.asc()).all()
            return [orm_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def list_by_status(
        self,
        status: ApplicationStatus,
        limit: int = 100,
    ) -> Iterable[ApplicationRecord]:
        session = self._get_session()
        try:
            rows = (
                session.query(ApplicationORM)
                .filter(ApplicationORM.status == status)
                .order_by(ApplicationORM.created_at.asc())
                .limit(limit)
                .all()
            )
            logger.debug(f"[sql] list_by_status status={status.value} -> {len(rows)} rows")
            return [orm_to_domain(orm) for orm in rows]
        finally:
            session.close()

    def find_by_source(self, source_location: str) -> Optional[ApplicationRecord]:
        session = self._get_session()
        try:
            orm = (
                session.query(ApplicationORM)
                .filter(ApplicationORM.source_location == source_location)
                .first()
            )
            return orm_to_domain(orm) if orm else None
        finally:
            session.close()

    # -------------------------
    # MODIFY
    # -------------------------

    def modify(
        self,
        application_id: str,
        mutate: Callable[[ApplicationRecord], object],
    ) -> ApplicationRecord:
        session = self._get_session()
        try:
            # Row lock for the read-modify-write
            orm = (
                session.query(ApplicationORM)
                .filter(ApplicationORM.application_id == application_id)
                .with_for_update()
                .first()
            )
            if orm is None:
                raise ApplicationNotFound(f"Application {application_id} not found")

            working = orm_to_domain(orm)
            mutate(working)

            _copy_onto(orm, working)
            orm.version = orm.version + 1
            session.commit()

            working.version = orm.version
            return working
        except ApplicationNotFound:
            session.rollback()
            raise
        except SQLAlchemyError as e:
            session.rollback()
            raise ApplicationConcurrencyError(
                f"Failed to update application {application_id}: {e}"
            ) from e
        finally:
            session.close()

    # -------------------------
    # DELETE
    # -------------------------

    def delete(self, application_id: str) -> bool:
        session = self._get_session()
        try:
            orm = session.get(ApplicationORM, application_id)
            if orm is None:
                return False
            session.delete(orm)
            session.commit()
            logger.debug(f"[sql] delete {application_id} -> done")
            return True
        except SQLAlchemyError as e:
            session.rollback()
            raise ApplicationConcurrencyError(f"Failed to delete application: {e}") from e
        finally:
            session.close()


# ============================================
# Token Store
# ============================================

def _token_to_domain(orm: AppTokenORM) -> CapabilityToken:
    return CapabilityToken(
        app_name=orm.app_name,
        token=orm.token,
        source_id=orm.source_id,
        permissions=list(orm.permissions or []),
        created_at=_aware(orm.created_at),
        last_used=_aware(orm.last_used),
    )


class SqlTokenStore(TokenStore):
    def __init__(self, session_factory: Optional[sessionmaker] = None):
        self._session_factory = session_factory or get_session_factory()

    def _get_session(self) -> Session:
        return self._session_factory()

    def _query(self, session: Session, app_name: str, source_id: str):
        return session.query(AppTokenORM).filter(
            AppTokenORM.app_name == app_name,
            AppTokenORM.source_id == source_id,
        )

    def get(self, app_name: str, source_id: str) -> Optional[CapabilityToken]:
        session = self._get_session()
        try:
            orm = self._query(session, app_name, source_id).first()
            return _token_to_domain(orm) if orm else None
        finally:
            session.close()

    def find_by_value(self, token: str) -> Optional[CapabilityToken]:
        session = self._get_session()
        try:
            orm = session.query(AppTokenORM).filter(AppTokenORM.token == token).first()
            return _token_to_domain(orm) if orm else None
        finally:
            session.close()

    def save(self, token: CapabilityToken) -> None:
        session = self._get_session()
        try:
            orm = self._query(session, token.app_name, token.source_id).first()
            if orm is None:
                orm = AppTokenORM(app_name=token.app_name, source_id=token.source_id)
                session.add(orm)
            orm.token = token.token
            orm.permissions = list(token.permissions)
            orm.created_at = token.created_at
            orm.last_used = token.last_used
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def delete(self, app_name: str, source_id: str) -> bool:
        session = self._get_session()
        try:
            deleted = self._query(session, app_name, source_id).delete()
            session.commit()
            return deleted > 0
        except SQLAlchemyError:
            session.rollback()
            raise
        finally:
            session.close()

    def list_all(self) -> Iterable[CapabilityToken]:
        session = self._get_session()
        try:
            rows: List[AppTokenORM] = session.query(AppTokenORM).all()
            return [_token_to_domain(orm) for orm in rows]
        finally:
            session.close()

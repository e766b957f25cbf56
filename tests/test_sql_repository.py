#tests\test_sql_repository.py

"""Test SQL repository implementation (in-memory SQLite)."""

import pytest

from deploy_engine.core.errors import ApplicationAlreadyExists, ApplicationNotFound
from deploy_engine.core.factory import ApplicationFactory
from deploy_engine.core.models import ApplicationStatus, SourceKind
from deploy_engine.infrastructure.sql.database import create_db_engine, drop_db, get_session_factory, init_db
from deploy_engine.infrastructure.sql.repository import SqlApplicationRepository, SqlTokenStore
from deploy_engine.orchestrator.tokens import CapabilityToken


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield get_session_factory(engine)
    drop_db(engine)
    engine.dispose()


@pytest.fixture
def repository(session_factory):
    return SqlApplicationRepository(session_factory)


@pytest.fixture
def token_store(session_factory):
    return SqlTokenStore(session_factory)


@pytest.fixture
def sample_application():
    return ApplicationFactory.from_source(source_location="https://example.com/org/blog.git")


class TestSqlApplicationRepository:
    """Test repository operations."""

    # -------------------------
    # CREATE TESTS
    # -------------------------

    def test_create_application(self, repository, sample_application):
        repository.create(sample_application)

        retrieved = repository.get(sample_application.application_id)
        assert retrieved is not None
        assert retrieved.name == "blog"
        assert retrieved.status == ApplicationStatus.IDLE
        assert retrieved.source_kind == SourceKind.SOURCE_CONTROLLED

    def test_create_duplicate_application_fails(self, repository, sample_application):
        repository.create(sample_application)

        with pytest.raises(ApplicationAlreadyExists):
            repository.create(sample_application)

    # -------------------------
    # READ TESTS
    # -------------------------

    def test_get_nonexistent_application(self, repository):
        assert repository.get("missing") is None

    def test_timestamps_come_back_timezone_aware(self, repository, sample_application):
        repository.create(sample_application)

        retrieved = repository.get(sample_application.application_id)

        assert retrieved.created_at.tzinfo is not None
        assert retrieved.created_at == sample_application.created_at

    def test_list_and_filters(self, repository, sample_application):
        other = ApplicationFactory.from_descriptor(name="notes")
        repository.create(sample_application)
        repository.create(other)
        repository.modify(other.application_id, lambda r: setattr(r, "status", ApplicationStatus.IMPORTING))

        assert [r.application_id for r in repository.list_all()] == [
            sample_application.application_id,
            other.application_id,
        ]
        assert [r.application_id for r in repository.list_by_status(ApplicationStatus.IMPORTING)] == [
            other.application_id,
        ]
        assert repository.find_by_source(sample_application.source_location).application_id == (
            sample_application.application_id
        )
        assert repository.find_by_source("https://example.com/none.git") is None

    # -------------------------
    # MODIFY TESTS
    # -------------------------

    def test_modify_bumps_version(self, repository, sample_application):
        repository.create(sample_application)

        def mutate(record):
            record.installed = True
            record.working_descriptor = "services:\n  web: {}\n"

        updated = repository.modify(sample_application.application_id, mutate)
        retrieved = repository.get(sample_application.application_id)

        assert updated.version == 1
        assert retrieved.version == 1
        assert retrieved.installed
        assert retrieved.working_descriptor == "services:\n  web: {}\n"

    def test_modify_nonexistent_application(self, repository):
        with pytest.raises(ApplicationNotFound):
            repository.modify("missing", lambda r: None)

    # -------------------------
    # DELETE TESTS
    # -------------------------

    def test_delete(self, repository, sample_application):
        repository.create(sample_application)

        assert repository.delete(sample_application.application_id)
        assert not repository.delete(sample_application.application_id)
        assert repository.get(sample_application.application_id) is None


class TestSqlTokenStore:
    def test_save_and_lookup(self, token_store):
        token_store.save(CapabilityToken(app_name="blog", token="a" * 64, source_id="blog-1"))

        found = token_store.get("blog", "blog-1")

        assert found.token == "a" * 64
        assert found.has_permission("get-self-status")
        assert token_store.find_by_value("a" * 64).app_name == "blog"
        assert token_store.get("blog", "blog-2") is None

    def test_save_replaces_existing(self, token_store):
        token_store.save(CapabilityToken(app_name="blog", token="a" * 64, source_id="blog-1"))
        token_store.save(CapabilityToken(app_name="blog", token="b" * 64, source_id="blog-1"))

        assert [t.token for t in token_store.list_all()] == ["b" * 64]

    def test_delete(self, token_store):
        token_store.save(CapabilityToken(app_name="blog", token="a" * 64, source_id="blog-1"))

        assert token_store.delete("blog", "blog-1")
        assert not token_store.delete("blog", "blog-1")
        assert token_store.list_all() == []

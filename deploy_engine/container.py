#deploy_engine\container.py

"""Dependency injection container - wires all services together."""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from deploy_engine.core.events import InMemoryLogStream, LoggingEventEmitter, MultiEventEmitter
from deploy_engine.core.locks import ApplicationLocks
from deploy_engine.core.service import StatusService
from deploy_engine.executor.build_queue import BuildQueue
from deploy_engine.infrastructure.docker.backend import DockerComposeBackend
from deploy_engine.infrastructure.docker.builder import DockerImageBuilder
from deploy_engine.infrastructure.docker.client import LazyDockerClient
from deploy_engine.infrastructure.docker.hooks import DockerExecHookRunner
from deploy_engine.infrastructure.git.fetcher import GitSourceFetcher
from deploy_engine.infrastructure.host.filesystem import LocalHostFilesystem
from deploy_engine.infrastructure.http.sync_notifier import WebhookSyncNotifier
from deploy_engine.infrastructure.sql.database import get_session_factory
from deploy_engine.infrastructure.sql.repository import SqlApplicationRepository, SqlTokenStore
from deploy_engine.orchestrator.application_service import ApplicationService
from deploy_engine.orchestrator.config import PipelineSettings
from deploy_engine.orchestrator.pipeline import DeploymentPipeline
from deploy_engine.orchestrator.provisioning import HostPathProvisioner
from deploy_engine.orchestrator.sync import InventorySync
from deploy_engine.orchestrator.tokens import CapabilityTokens


@dataclass
class Container:
    settings: PipelineSettings
    log_stream: InMemoryLogStream
    status: StatusService
    sync: InventorySync
    pipeline: DeploymentPipeline
    service: ApplicationService


def build_container(
    settings: Optional[PipelineSettings] = None,
    session_factory: Optional[sessionmaker] = None,
) -> Container:
    settings = settings or PipelineSettings()
    session_factory = session_factory or get_session_factory()

    # ============================================
    # REPOSITORIES
    # ============================================

    repository = SqlApplicationRepository(session_factory)
    tokens = CapabilityTokens(SqlTokenStore(session_factory))

    # ============================================
    # EVENTS
    # ============================================

    log_stream = InMemoryLogStream()
    emitters = MultiEventEmitter([
        LoggingEventEmitter(),
        log_stream,
    ])

    # ============================================
    # COLLABORATORS
    # ============================================

    docker_client = LazyDockerClient()
    fetcher = GitSourceFetcher(settings)
    builder = DockerImageBuilder(docker_client, timeout=settings.build_timeout_seconds)
    backend = DockerComposeBackend(docker_client)
    hooks = DockerExecHookRunner(settings.hook_container_name, docker_client)
    filesystem = LocalHostFilesystem()
    notifier = (
        WebhookSyncNotifier(settings.sync_webhook_url, settings.sync_timeout_seconds)
        if settings.sync_webhook_url else None
    )

    # ============================================
    # SERVICES
    # ============================================

    status = StatusService(repository=repository, event_emitters=emitters)
    locks = ApplicationLocks()
    queue = BuildQueue(settings.max_concurrent_builds)
    provisioner = HostPathProvisioner(filesystem, settings)
    sync = InventorySync(backend, status, repository, locks, notifier)

    pipeline = DeploymentPipeline(
        status=status,
        fetcher=fetcher,
        builder=builder,
        backend=backend,
        hooks=hooks,
        tokens=tokens,
        filesystem=filesystem,
        provisioner=provisioner,
        sync=sync,
        settings=settings,
    )

    service = ApplicationService(
        status=status,
        repository=repository,
        pipeline=pipeline,
        fetcher=fetcher,
        backend=backend,
        filesystem=filesystem,
        provisioner=provisioner,
        tokens=tokens,
        locks=locks,
        queue=queue,
        log_stream=log_stream,
        settings=settings,
    )

    return Container(
        settings=settings,
        log_stream=log_stream,
        status=status,
        sync=sync,
        pipeline=pipeline,
        service=service,
    )

#tests\conftest.py

"""Pytest configuration and fixtures."""

import asyncio
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

import pytest

from deploy_engine.core.events import InMemoryLogStream, MultiEventEmitter
from deploy_engine.core.locks import ApplicationLocks
from deploy_engine.core.service import StatusService
from deploy_engine.executor.build_queue import BuildQueue
from deploy_engine.infrastructure.memory.repository import InMemoryApplicationRepository
from deploy_engine.infrastructure.memory.tokens import InMemoryTokenStore
from deploy_engine.orchestrator.application_service import ApplicationService
from deploy_engine.orchestrator.collaborators import (
    ApplyOutcome,
    BackendApplication,
    DeploymentBackend,
    FetchResult,
    HookResult,
    HookRunner,
    HostFilesystem,
    ImageBuilder,
    SourceFetcher,
    SyncNotifier,
    UpdateCheck,
)
from deploy_engine.orchestrator.config import PipelineSettings
from deploy_engine.orchestrator.pipeline import DeploymentPipeline
from deploy_engine.orchestrator.provisioning import HostPathProvisioner
from deploy_engine.orchestrator.sync import InventorySync
from deploy_engine.orchestrator.tokens import CapabilityTokens


SOURCE_URL = "https://example.com/org/app.git"

WEB_COMPOSE = """\
services:
  web:
    image: nginx:alpine
    ports:
      - "8080:80"
    environment:
      - FOO=bar
    volumes:
      - /DATA/AppData/$AppID/data:/data
"""


# ============================================
# FAKE COLLABORATORS
# ============================================

class FakeFetcher(SourceFetcher):
    """Writes `descriptor` into a per-application tree under `root`."""

    def __init__(self, root: str, descriptor: Optional[str] = WEB_COMPOSE, revision: str = "rev-1"):
        self.root = root
        self.descriptor = descriptor
        self.revision = revision
        self.latest = revision
        self.error: Optional[Exception] = None
        self.calls: List[str] = []

    async def fetch(self, application_id: str, source_location: str) -> FetchResult:
        self.calls.append(source_location)
        if self.error:
            raise self.error

        path = os.path.join(self.root, application_id)
        os.makedirs(path, exist_ok=True)
        compose = os.path.join(path, "docker-compose.yml")
        if self.descriptor is not None:
            with open(compose, "w", encoding="utf-8") as f:
                f.write(self.descriptor)
        elif os.path.exists(compose):
            os.remove(compose)
        return FetchResult(path=path, revision=self.revision)

    async def check_for_updates(self, application_id: str, source_location: str) -> UpdateCheck:
        return UpdateCheck(current_version=self.revision, latest_version=self.latest)


class FakeBuilder(ImageBuilder):
    def __init__(self):
        self.builds: List[str] = []
        self.error: Optional[Exception] = None

    async def build(self, application_id: str, context_path: str, tag: str) -> str:
        if self.error:
            raise self.error
        self.builds.append(tag)
        return tag


class FakeBackend(DeploymentBackend):
    """
    Apply outcomes are consumed in order; once `outcomes` is empty every
    apply succeeds. `gate`, when set, blocks apply until released.
    """

    def __init__(self):
        self.outcomes: List[ApplyOutcome] = []
        self.applies: List[Dict] = []
        self.running = True
        self.projects: Dict[str, bool] = {}
        self.removed: List[Dict] = []
        self.start_outcome = ApplyOutcome(True, "started")
        self.stop_outcome = ApplyOutcome(True, "stopped")
        self.remove_outcome = ApplyOutcome(True, "removed")
        self.remove_error: Optional[Exception] = None
        self.gate: Optional[asyncio.Event] = None
        self.entered: Optional[asyncio.Event] = None

    async def apply(self, project_name: str, descriptor_path: str, timeout: float) -> ApplyOutcome:
        self.applies.append({"project": project_name, "path": descriptor_path, "timeout": timeout})
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()

        outcome = self.outcomes.pop(0) if self.outcomes else ApplyOutcome(True, "applied")
        if outcome.success:
            self.projects[project_name] = self.running
        return outcome

    async def is_running(self, project_name: str) -> bool:
        return self.projects.get(project_name, False)

    async def list_applications(self) -> List[BackendApplication]:
        return [BackendApplication(name=name, running=running) for name, running in self.projects.items()]

    async def start(self, project_name: str) -> ApplyOutcome:
        if self.start_outcome.success:
            self.projects[project_name] = True
        return self.start_outcome

    async def stop(self, project_name: str) -> ApplyOutcome:
        if self.stop_outcome.success:
            self.projects[project_name] = False
        return self.stop_outcome

    async def remove(self, project_name: str, descriptor_path: Optional[str], remove_volumes: bool) -> ApplyOutcome:
        self.removed.append({"project": project_name, "remove_volumes": remove_volumes})
        if self.remove_error is not None:
            raise self.remove_error
        if self.remove_outcome.success:
            self.projects.pop(project_name, None)
        return self.remove_outcome


class FakeHooks(HookRunner):
    def __init__(self):
        self.calls: List[Dict] = []
        self.exit_code = 0

    async def run(self, command: str, run_as_user: Optional[str], timeout: float) -> HookResult:
        self.calls.append({"command": command, "user": run_as_user})
        return HookResult(exit_code=self.exit_code, output=[f"ran {command}"])


class FakeFilesystem(HostFilesystem):
    def __init__(self):
        self.files: Dict[str, str] = {}
        self.directories: Dict[str, str] = {}
        self.removed: List[str] = []
        self.chowned: List[str] = []
        self.failing: List[str] = []

    def _check(self, path: str) -> None:
        if path in self.failing:
            raise PermissionError(f"permission denied: {path}")

    async def ensure_directory(self, path: str, owner: str, mode: int = 0o755) -> None:
        self._check(path)
        self.directories[path] = owner

    async def chown_tree(self, path: str, owner: str) -> None:
        self._check(path)
        self.chowned.append(path)

    async def remove_tree(self, path: str) -> None:
        self._check(path)
        self.removed.append(path)
        prefix = path.rstrip("/") + "/"
        for key in [k for k in self.files if k.startswith(prefix)]:
            del self.files[key]

    async def write_text(self, path: str, content: str) -> None:
        self._check(path)
        self.files[path] = content

    async def read_text(self, path: str) -> Optional[str]:
        return self.files.get(path)


class RecordingNotifier(SyncNotifier):
    def __init__(self):
        self.notifications: List[List[BackendApplication]] = []

    async def notify(self, applications: List[BackendApplication]) -> None:
        self.notifications.append(list(applications))


# ============================================
# HARNESS
# ============================================

@dataclass
class Harness:
    settings: PipelineSettings
    repository: InMemoryApplicationRepository
    status: StatusService
    log_stream: InMemoryLogStream
    fetcher: FakeFetcher
    builder: FakeBuilder
    backend: FakeBackend
    hooks: FakeHooks
    filesystem: FakeFilesystem
    notifier: RecordingNotifier
    token_store: InMemoryTokenStore
    tokens: CapabilityTokens
    locks: ApplicationLocks
    pipeline: DeploymentPipeline
    service: ApplicationService

    def messages(self, application_id: str) -> List[str]:
        return [e.message for e in self.log_stream.events_for(application_id)]

    def written(self, display_name: str) -> Optional[str]:
        return self.filesystem.files.get(self.pipeline.descriptor_path(display_name))


@pytest.fixture
def settings():
    return PipelineSettings(
        data_root="/DATA/AppData",
        apps_root="/DATA/AppData/casaos/apps",
        repos_root="/app/repos",
        puid="1000",
        pgid="1000",
        service_user="ubuntu",
        ref_domain="",
        settle_delay_seconds=0,
        apply_timeout_seconds=600,
        apply_retry_timeout_factor=1.5,
        max_concurrent_builds=2,
        sync_webhook_url=None,
    )


@pytest.fixture
def harness(settings, tmp_path):
    repository = InMemoryApplicationRepository()
    log_stream = InMemoryLogStream()
    status = StatusService(repository, MultiEventEmitter([log_stream]))

    fetcher = FakeFetcher(str(tmp_path))
    builder = FakeBuilder()
    backend = FakeBackend()
    hooks = FakeHooks()
    filesystem = FakeFilesystem()
    notifier = RecordingNotifier()
    token_store = InMemoryTokenStore()
    tokens = CapabilityTokens(token_store)
    locks = ApplicationLocks()

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
        queue=BuildQueue(settings.max_concurrent_builds),
        log_stream=log_stream,
        settings=settings,
    )

    return Harness(
        settings=settings,
        repository=repository,
        status=status,
        log_stream=log_stream,
        fetcher=fetcher,
        builder=builder,
        backend=backend,
        hooks=hooks,
        filesystem=filesystem,
        notifier=notifier,
        token_store=token_store,
        tokens=tokens,
        locks=locks,
        pipeline=pipeline,
        service=service,
    )

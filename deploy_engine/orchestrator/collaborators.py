"""
External collaborators of the pipeline.

Every long-running call is a coroutine so a pipeline waiting on git, the
image builder, a hook or the backend never blocks other pipelines.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional


# -------------------------
# RESULT TYPES
# -------------------------

@dataclass
class FetchResult:
    path: str
    revision: Optional[str] = None


@dataclass
class UpdateCheck:
    current_version: Optional[str]
    latest_version: Optional[str]

    @property
    def update_available(self) -> bool:
        return bool(self.latest_version) and self.current_version != self.latest_version


@dataclass
class ApplyOutcome:
    success: bool
    message: str = ""
    timed_out: bool = False


@dataclass
class HookResult:
    exit_code: int
    output: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.exit_code == 0


@dataclass
class BackendApplication:
    name: str
    running: bool
    containers: Dict[str, str] = field(default_factory=dict)


# -------------------------
# INTERFACES
# -------------------------

class SourceFetcher(ABC):
    @abstractmethod
    async def fetch(self, application_id: str, source_location: str) -> FetchResult:
        """Clone or update the working tree; raises FetchError."""
        raise NotImplementedError

    @abstractmethod
    async def check_for_updates(self, application_id: str, source_location: str) -> UpdateCheck:
        raise NotImplementedError


class ImageBuilder(ABC):
    @abstractmethod
    async def build(self, application_id: str, context_path: str, tag: str) -> str:
        """Build an image from `context_path`; returns the image reference or raises BuildError."""
        raise NotImplementedError


class DeploymentBackend(ABC):
    @abstractmethod
    async def apply(self, project_name: str, descriptor_path: str, timeout: float) -> ApplyOutcome:
        raise NotImplementedError

    @abstractmethod
    async def is_running(self, project_name: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    async def list_applications(self) -> List[BackendApplication]:
        raise NotImplementedError

    @abstractmethod
    async def start(self, project_name: str) -> ApplyOutcome:
        raise NotImplementedError

    @abstractmethod
    async def stop(self, project_name: str) -> ApplyOutcome:
        raise NotImplementedError

    @abstractmethod
    async def remove(
        self, project_name: str, descriptor_path: Optional[str], remove_volumes: bool
    ) -> ApplyOutcome:
        raise NotImplementedError


class HookRunner(ABC):
    @abstractmethod
    async def run(self, command: str, run_as_user: Optional[str], timeout: float) -> HookResult:
        """Run `command` on the host; raises HookExecutionError when it cannot be started."""
        raise NotImplementedError


class HostFilesystem(ABC):
    """Filesystem operations on host paths (directories, ownership, wipes)."""

    @abstractmethod
    async def ensure_directory(self, path: str, owner: str, mode: int = 0o755) -> None:
        raise NotImplementedError

    @abstractmethod
    async def chown_tree(self, path: str, owner: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_tree(self, path: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def write_text(self, path: str, content: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def read_text(self, path: str) -> Optional[str]:
        raise NotImplementedError


class SyncNotifier(ABC):
    @abstractmethod
    async def notify(self, applications: List[BackendApplication]) -> None:
        raise NotImplementedError

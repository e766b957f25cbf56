# deploy_engine/infrastructure/docker/hooks.py

import asyncio
import logging
from typing import Optional

import docker

from deploy_engine.core.errors import HookExecutionError
from deploy_engine.infrastructure.docker.client import LazyDockerClient
from deploy_engine.orchestrator.collaborators import HookResult, HookRunner

logger = logging.getLogger(__name__)


class DockerExecHookRunner(HookRunner):
    """Runs install hooks with `bash -c` inside the host management container."""

    def __init__(self, container_name: str, client: Optional[LazyDockerClient] = None):
        self._container_name = container_name
        self._client = client or LazyDockerClient()

    def _exec(self, command: str, run_as_user: Optional[str]) -> HookResult:
        container = self._client.get().containers.get(self._container_name)
        exit_code, output = container.exec_run(
            ["bash", "-c", command],
            user=run_as_user or "",
            demux=False,
        )
        text = output.decode("utf-8", errors="replace") if output else ""
        return HookResult(exit_code=exit_code, output=text.splitlines())

    async def run(self, command: str, run_as_user: Optional[str], timeout: float) -> HookResult:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._exec, command, run_as_user),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise HookExecutionError(f"Hook timed out after {timeout:.0f}s")
        except docker.errors.NotFound as e:
            raise HookExecutionError(f"Hook container {self._container_name} not found") from e
        except docker.errors.DockerException as e:
            raise HookExecutionError(f"Could not run hook: {e}") from e

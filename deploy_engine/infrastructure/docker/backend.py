# deploy_engine/infrastructure/docker/backend.py
"""
Compose backend - applies descriptors with `docker compose` and inspects
projects through the Docker SDK by their compose project label.
"""

import asyncio
import logging
import os
from typing import Dict, List, Optional

import docker

from deploy_engine.infrastructure.docker.client import LazyDockerClient
from deploy_engine.orchestrator.collaborators import (
    ApplyOutcome,
    BackendApplication,
    DeploymentBackend,
)

logger = logging.getLogger(__name__)


PROJECT_LABEL = "com.docker.compose.project"
SERVICE_LABEL = "com.docker.compose.service"


class DockerComposeBackend(DeploymentBackend):
    def __init__(
        self,
        client: Optional[LazyDockerClient] = None,
        compose_command: Optional[List[str]] = None,
        stop_timeout: int = 10,
    ):
        self._client = client or LazyDockerClient()
        self._compose = compose_command or ["docker", "compose"]
        self._stop_timeout = stop_timeout

    # -------------------------
    # COMPOSE CLI
    # -------------------------

    async def _compose_run(self, args: List[str], timeout: float) -> ApplyOutcome:
        try:
            proc = await asyncio.create_subprocess_exec(
                *self._compose, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            return ApplyOutcome(success=False, message=f"Could not run compose: {e}")

        try:
            out, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return ApplyOutcome(
                success=False,
                message=f"compose {args[-1]} timed out after {timeout:.0f}s",
                timed_out=True,
            )

        output = out.decode("utf-8", errors="replace").strip()
        if proc.returncode != 0:
            return ApplyOutcome(success=False, message=output or f"exit code {proc.returncode}")
        return ApplyOutcome(success=True, message=output)

    async def apply(self, project_name: str, descriptor_path: str, timeout: float) -> ApplyOutcome:
        logger.info(f"[backend] 🚀 {project_name}: compose up ({descriptor_path})")
        return await self._compose_run(
            ["-p", project_name, "-f", descriptor_path, "up", "-d", "--remove-orphans"],
            timeout,
        )

    # -------------------------
    # SDK INSPECTION
    # -------------------------

    def _containers(self, project_name: Optional[str] = None):
        label = f"{PROJECT_LABEL}={project_name}" if project_name else PROJECT_LABEL
        return self._client.get().containers.list(all=True, filters={"label": label})

    async def is_running(self, project_name: str) -> bool:
        containers = await asyncio.to_thread(self._containers, project_name)
        return any(c.status == "running" for c in containers)

    def _inventory(self) -> List[BackendApplication]:
        projects: Dict[str, BackendApplication] = {}
        for container in self._containers():
            labels = container.labels or {}
            name = labels.get(PROJECT_LABEL)
            if not name:
                continue
            app = projects.setdefault(name, BackendApplication(name=name, running=False))
            app.containers[labels.get(SERVICE_LABEL, container.name)] = container.status
            if container.status == "running":
                app.running = True
        return list(projects.values())

    async def list_applications(self) -> List[BackendApplication]:
        return await asyncio.to_thread(self._inventory)

    def _each_container(self, project_name: str, action: str) -> ApplyOutcome:
        containers = self._containers(project_name)
        if not containers:
            return ApplyOutcome(success=False, message=f"No containers for {project_name}")

        for container in containers:
            if action == "start":
                container.start()
            elif action == "stop":
                container.stop(timeout=self._stop_timeout)
            else:
                container.remove(force=True)
        return ApplyOutcome(success=True, message=f"{action} {len(containers)} container(s)")

    async def _sdk_action(self, project_name: str, action: str) -> ApplyOutcome:
        try:
            return await asyncio.to_thread(self._each_container, project_name, action)
        except docker.errors.DockerException as e:
            logger.error(f"[backend] {action} {project_name} failed: {e}")
            return ApplyOutcome(success=False, message=f"Docker error: {e}")

    async def start(self, project_name: str) -> ApplyOutcome:
        return await self._sdk_action(project_name, "start")

    async def stop(self, project_name: str) -> ApplyOutcome:
        return await self._sdk_action(project_name, "stop")

    async def remove(
        self, project_name: str, descriptor_path: Optional[str], remove_volumes: bool
    ) -> ApplyOutcome:
        if descriptor_path and os.path.isfile(descriptor_path):
            args = ["-p", project_name, "-f", descriptor_path, "down", "--remove-orphans"]
            if remove_volumes:
                args.append("-v")
            return await self._compose_run(args, timeout=300)

        # Descriptor already gone: remove whatever carries the project label
        outcome = await self._sdk_action(project_name, "remove")
        if not outcome.success and outcome.message.startswith("No containers"):
            return ApplyOutcome(success=True, message=outcome.message)
        return outcome

# deploy_engine/infrastructure/docker/builder.py

import asyncio
import logging
import os
from typing import Optional

import docker

from deploy_engine.core.errors import BuildError
from deploy_engine.infrastructure.docker.client import LazyDockerClient
from deploy_engine.orchestrator.collaborators import ImageBuilder

logger = logging.getLogger(__name__)


class DockerImageBuilder(ImageBuilder):
    """Builds images from a source tree's Dockerfile through the Docker SDK."""

    def __init__(self, client: Optional[LazyDockerClient] = None, timeout: float = 1800.0):
        self._client = client or LazyDockerClient()
        self._timeout = timeout

    def _build_sync(self, context_path: str, tag: str) -> str:
        image, logs = self._client.get().images.build(path=context_path, tag=tag, rm=True)
        for chunk in logs:
            line = chunk.get("stream", "").strip() if isinstance(chunk, dict) else ""
            if line:
                logger.debug(f"[build] {tag}: {line}")
        return tag

    async def build(self, application_id: str, context_path: str, tag: str) -> str:
        if not os.path.isfile(os.path.join(context_path, "Dockerfile")):
            raise BuildError(f"No Dockerfile in {context_path}")

        logger.info(f"[build] 🐳 {application_id}: building {tag} from {context_path}")
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._build_sync, context_path, tag),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            raise BuildError(f"Image build timed out after {self._timeout:.0f}s")
        except docker.errors.BuildError as e:
            raise BuildError(f"Image build failed: {e.msg}") from e
        except docker.errors.DockerException as e:
            raise BuildError(f"Docker error during build: {e}") from e

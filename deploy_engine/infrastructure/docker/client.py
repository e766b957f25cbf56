# deploy_engine/infrastructure/docker/client.py

import logging
from typing import Optional

import docker

logger = logging.getLogger(__name__)


class LazyDockerClient:
    """Connects to the local Docker daemon on first use."""

    def __init__(self, client: Optional[docker.DockerClient] = None):
        self._client = client

    def get(self) -> docker.DockerClient:
        if self._client is None:
            self._client = docker.from_env()
            logger.info("✅ Connected to Docker daemon")
        return self._client

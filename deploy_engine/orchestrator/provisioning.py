# deploy_engine/orchestrator/provisioning.py
"""Host path provisioning for bind-mounted volumes."""

import logging
import os
from typing import Iterable, List

from deploy_engine.core.errors import ProvisioningError
from deploy_engine.orchestrator.collaborators import HostFilesystem

logger = logging.getLogger(__name__)


class HostPathProvisioner:
    """
    Creates and owns host directories under the managed data root.

    Failures are returned per path, never raised: one unwritable path
    must not stop the others from being provisioned.
    """

    def __init__(self, filesystem: HostFilesystem, settings):
        self._fs = filesystem
        self._settings = settings

    @property
    def owner(self) -> str:
        return f"{self._settings.puid}:{self._settings.pgid}"

    def app_data_path(self, display_name: str) -> str:
        return os.path.join(self._settings.data_root, display_name)

    def _inside_root(self, path: str) -> bool:
        root = os.path.normpath(self._settings.data_root)
        path = os.path.normpath(path)
        return path.startswith(root + os.sep)

    async def provision(self, paths: Iterable[str]) -> List[ProvisioningError]:
        failures: List[ProvisioningError] = []
        done = set()

        for path in paths:
            resolved = os.path.realpath(os.path.normpath(path))
            if resolved in done:
                continue
            done.add(resolved)

            if not self._inside_root(path):
                failures.append(
                    ProvisioningError(f"{path} is outside {self._settings.data_root}", path=path)
                )
                continue

            try:
                await self._fs.ensure_directory(path, self.owner)
                logger.info(f"[provision] ✅ {path}")
            except Exception as e:
                logger.warning(f"[provision] ⚠️ {path}: {e}")
                failures.append(ProvisioningError(f"Could not provision {path}: {e}", path=path))

        return failures

    async def wipe(self, display_name: str) -> None:
        path = self.app_data_path(display_name)
        if not self._inside_root(path):
            raise ProvisioningError(f"Refusing to wipe {path}", path=path)
        logger.info(f"[provision] 🗑️ wiping {path}")
        await self._fs.remove_tree(path)

    async def reconcile_ownership(self, paths: Iterable[str]) -> List[ProvisioningError]:
        """Best-effort chown of paths the backend may have created as root."""
        failures: List[ProvisioningError] = []
        for path in paths:
            try:
                await self._fs.chown_tree(path, self.owner)
            except Exception as e:
                logger.warning(f"[provision] ⚠️ ownership of {path}: {e}")
                failures.append(ProvisioningError(f"Could not fix ownership of {path}: {e}", path=path))
        return failures

# deploy_engine/orchestrator/sync.py

import logging
from typing import Dict, List, Optional

from deploy_engine.core.errors import ApplicationNotFound
from deploy_engine.core.locks import ApplicationLocks
from deploy_engine.core.service import StatusService
from deploy_engine.orchestrator.collaborators import (
    BackendApplication,
    DeploymentBackend,
    SyncNotifier,
)

logger = logging.getLogger(__name__)


class InventorySync:
    """
    Re-reads the backend inventory and refreshes `running` / `installed`.

    Applications with an operation in flight are skipped; their pipeline
    owns the record until it returns.
    """

    def __init__(
        self,
        backend: DeploymentBackend,
        status: StatusService,
        repository,
        locks: ApplicationLocks,
        notifier: Optional[SyncNotifier] = None,
    ):
        self._backend = backend
        self._status = status
        self._repo = repository
        self._locks = locks
        self._notifier = notifier

    async def sync(self) -> List[BackendApplication]:
        inventory = await self._backend.list_applications()
        by_name: Dict[str, BackendApplication] = {app.name: app for app in inventory}

        updated = 0
        for record in self._repo.list_all():
            if self._locks.is_locked(record.application_id):
                continue

            app = by_name.get(record.display_name)
            running = bool(app and app.running)
            installed = record.installed or app is not None

            if running != record.running or installed != record.installed:
                try:
                    self._status.update(record.application_id, running=running, installed=installed)
                except ApplicationNotFound:
                    continue
                updated += 1

        logger.info(f"[sync] inventory: {len(inventory)} app(s), {updated} record(s) refreshed")

        if self._notifier:
            await self._notifier.notify(inventory)

        return inventory

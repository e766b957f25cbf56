#deploy_engine\infrastructure\http\sync_notifier.py

import asyncio
import logging
from dataclasses import asdict
from typing import List

import requests

from deploy_engine.orchestrator.collaborators import BackendApplication, SyncNotifier

logger = logging.getLogger(__name__)


class WebhookSyncNotifier(SyncNotifier):
    """POSTs the backend inventory to an external webhook after each sync."""

    def __init__(self, url: str, timeout: float = 10.0):
        self.url = url
        self.timeout = timeout

    def _post(self, payload: dict) -> None:
        response = requests.post(self.url, json=payload, timeout=self.timeout)
        if response.status_code >= 400:
            raise RuntimeError(
                f"Sync webhook failed [{response.status_code}]: {response.text}"
            )

    async def notify(self, applications: List[BackendApplication]) -> None:
        payload = {"applications": [asdict(app) for app in applications]}
        await asyncio.to_thread(self._post, payload)
        logger.info(f"[sync] 📡 notified {self.url} ({len(applications)} apps)")

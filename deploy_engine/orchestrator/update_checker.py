# deploy_engine/orchestrator/update_checker.py
"""
Update checker - background loop that refreshes version markers and
starts the pipeline for auto-update applications that are behind.

Version markers are opaque: an application is up to date when
`current_version == latest_version`.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from deploy_engine.core.errors import ApplicationError
from deploy_engine.core.models import ApplicationRecord, utcnow
from deploy_engine.orchestrator.application_service import ApplicationService
from deploy_engine.orchestrator.pipeline import PipelineOptions

logger = logging.getLogger(__name__)


def is_due(record: ApplicationRecord, now: Optional[datetime] = None) -> bool:
    if not (record.auto_update and record.is_source_controlled and record.installed):
        return False
    if record.last_update_check is None:
        return True
    now = now or utcnow()
    return now - record.last_update_check >= timedelta(minutes=record.auto_update_interval_minutes)


class UpdateChecker:
    def __init__(self, service: ApplicationService, poll_interval: float = 60.0):
        self._service = service
        self.poll_interval = poll_interval
        self._stop_requested = False

    def stop(self) -> None:
        self._stop_requested = True

    async def check_cycle(self) -> List[str]:
        """One pass; returns ids whose pipeline was started."""
        started: List[str] = []

        for record in self._service.list_applications():
            if not is_due(record) or self._service.is_busy(record.application_id):
                continue

            try:
                info = await self._service.check_updates(record.application_id)
            except ApplicationError as e:
                logger.warning(f"[updates] check failed for {record.application_id}: {e}")
                continue

            if not info["update_available"]:
                logger.debug(f"[updates] {record.application_id} is up to date")
                continue

            logger.info(
                f"[updates] 🔄 {record.display_name}: {info['current_version']} -> {info['latest_version']}"
            )
            result = self._service.start_pipeline(
                record.application_id,
                PipelineOptions(run_pre_install_hook=False),
            )
            if result.success:
                started.append(record.application_id)

        return started

    async def run_forever(self) -> None:
        logger.info("=" * 60)
        logger.info("🔄 UPDATE CHECKER STARTED")
        logger.info(f"Poll interval: {self.poll_interval}s")
        logger.info("=" * 60)

        while not self._stop_requested:
            try:
                await self.check_cycle()
            except Exception as e:
                logger.error(f"Error in update cycle: {e}", exc_info=True)

            if not self._stop_requested:
                await asyncio.sleep(self.poll_interval)

        await self._service.wait_for_background_tasks()
        logger.info("Update checker stopped")

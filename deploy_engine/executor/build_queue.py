# deploy_engine/executor/build_queue.py
"""
Caller-side admission for pipelines.

Pipelines assume they have already been admitted; the queue bounds how many
run at once and keeps a short history for the dashboard. Jobs are admitted
in submission order.
"""

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, Deque, Dict, List, Optional
from uuid import uuid4

from deploy_engine.core.models import utcnow

logger = logging.getLogger(__name__)


QUEUED = "queued"
BUILDING = "building"
COMPLETED = "completed"
FAILED = "failed"


@dataclass
class BuildJob:
    application_id: str
    name: str
    job_id: str = field(default_factory=lambda: uuid4().hex[:12])
    status: str = QUEUED
    queued_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    error: Optional[str] = None

    def duration_seconds(self) -> Optional[float]:
        if self.started_at and self.finished_at:
            return (self.finished_at - self.started_at).total_seconds()
        return None

    def to_dict(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        data = {
            "job_id": self.job_id,
            "application_id": self.application_id,
            "name": self.name,
            "status": self.status,
            "queued_at": self.queued_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
        }
        if self.status == QUEUED:
            data["wait_seconds"] = (now - self.queued_at).total_seconds()
        elif self.status == BUILDING and self.started_at:
            data["run_seconds"] = (now - self.started_at).total_seconds()
        else:
            data["duration_seconds"] = self.duration_seconds()
        return data


class BuildQueue:
    def __init__(self, max_concurrent: int, history_size: int = 50):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")

        self._max_concurrent = max_concurrent
        self._queued: List[BuildJob] = []
        self._running: Dict[str, BuildJob] = {}  # job_id -> job
        self._completed: Deque[BuildJob] = deque(maxlen=history_size)
        self._condition = asyncio.Condition()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def free_slots(self) -> int:
        return self._max_concurrent - len(self._running)

    def _admissible(self, job: BuildJob) -> bool:
        return bool(self._queued) and self._queued[0] is job and self.free_slots() > 0

    async def submit(
        self,
        application_id: str,
        run: Callable[[], Awaitable],
        name: Optional[str] = None,
    ):
        """Wait for a free slot, then await `run()` and return its result."""
        job = BuildJob(application_id=application_id, name=name or application_id)
        self._queued.append(job)
        logger.info(f"[queue] 📋 queued {job.name} ({len(self._queued)} waiting)")

        async with self._condition:
            try:
                await self._condition.wait_for(lambda: self._admissible(job))
            finally:
                self._queued.remove(job)
                self._condition.notify_all()

            job.status = BUILDING
            job.started_at = utcnow()
            self._running[job.job_id] = job

        logger.info(
            f"[queue] 🚀 started {job.name} "
            f"({len(self._running)}/{self.max_concurrent} slots used)"
        )

        try:
            result = await run()
            success = getattr(result, "success", True)
            job.status = COMPLETED if success else FAILED
            if not success:
                job.error = getattr(result, "message", None)
            return result
        except Exception as e:
            job.status = FAILED
            job.error = str(e)
            raise
        finally:
            job.finished_at = utcnow()
            self._completed.append(job)
            async with self._condition:
                self._running.pop(job.job_id, None)
                self._condition.notify_all()
            logger.info(f"[queue] {job.name} finished: {job.status}")

    # -------------------------
    # INSPECTION
    # -------------------------

    def is_building(self, application_id: str) -> bool:
        return any(job.application_id == application_id for job in self._running.values())

    def is_queued(self, application_id: str) -> bool:
        return any(job.application_id == application_id for job in self._queued)

    def status(self) -> dict:
        now = utcnow()
        return {
            "max_concurrent": self.max_concurrent,
            "running": len(self._running),
            "queued": len(self._queued),
            "queued_jobs": [job.to_dict(now) for job in self._queued],
            "running_jobs": [job.to_dict(now) for job in self._running.values()],
        }

    def recent_jobs(self, limit: int = 10) -> List[dict]:
        return [job.to_dict() for job in reversed(list(self._completed)[-limit:])]

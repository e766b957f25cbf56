# deploy_engine/orchestrator/application_service.py
"""Boundary operations exposed to the API and the workers."""

import asyncio
import os
import logging
from typing import List, Optional, Set

from deploy_engine.core.errors import (
    ApplicationAlreadyExists,
    ApplicationValidationError,
    PipelineError,
)
from deploy_engine.core.events import InMemoryLogStream
from deploy_engine.core.factory import ApplicationFactory
from deploy_engine.core.locks import ApplicationLocks
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus, utcnow
from deploy_engine.core.service import StatusService
from deploy_engine.core.validation import validate_auto_update_interval
from deploy_engine.descriptor.document import (
    annotations,
    descriptor_name,
    parse_descriptor,
    service_names,
)
from deploy_engine.descriptor.reconciler import DescriptorDiffResult, reconcile
from deploy_engine.executor.build_queue import BuildQueue
from deploy_engine.orchestrator.collaborators import DeploymentBackend, HostFilesystem, SourceFetcher
from deploy_engine.orchestrator.pipeline import (
    DeploymentPipeline,
    PipelineOptions,
    PipelineResult,
    fetch_descriptor,
)
from deploy_engine.orchestrator.provisioning import HostPathProvisioner
from deploy_engine.orchestrator.tokens import CapabilityTokens

logger = logging.getLogger(__name__)


class ApplicationService:
    def __init__(
        self,
        *,
        status: StatusService,
        repository,
        pipeline: DeploymentPipeline,
        fetcher: SourceFetcher,
        backend: DeploymentBackend,
        filesystem: HostFilesystem,
        provisioner: HostPathProvisioner,
        tokens: CapabilityTokens,
        locks: ApplicationLocks,
        queue: BuildQueue,
        log_stream: InMemoryLogStream,
        settings,
    ):
        self._status = status
        self._repo = repository
        self._pipeline = pipeline
        self._fetcher = fetcher
        self._backend = backend
        self._fs = filesystem
        self._provisioner = provisioner
        self._tokens = tokens
        self._locks = locks
        self._queue = queue
        self._log_stream = log_stream
        self._settings = settings
        self._tasks: Set[asyncio.Task] = set()

    # ============================================
    # IMPORT
    # ============================================

    async def import_application(
        self,
        source_location: str,
        auto_update: bool = False,
        interval: Optional[int] = None,
    ) -> ApplicationRecord:
        """IDLE -> IMPORTING -> IMPORTED | ERROR; fetch only."""
        source_location = (source_location or "").strip()
        if not source_location:
            raise ApplicationValidationError("source_location is required")
        if self._repo.find_by_source(source_location):
            raise ApplicationAlreadyExists(f"{source_location} is already imported")

        record = ApplicationFactory.from_source(
            source_location=source_location,
            auto_update=auto_update,
            auto_update_interval_minutes=interval or self._settings.default_auto_update_interval,
        )
        self._status.register(record)
        app_id = record.application_id

        with self._locks.hold(app_id):
            self._status.transition(app_id, ApplicationStatus.IMPORTING)
            self._status.log(app_id, f"📥 Importing {source_location}")

            try:
                fetched, text = await fetch_descriptor(self._fetcher, record)
                document = parse_descriptor(text)
            except PipelineError as e:
                logger.warning(f"[service] import of {source_location} failed: {e}")
                self._status.log(app_id, f"❌ Import failed: {e}", "error")
                return self._status.transition(app_id, ApplicationStatus.ERROR, status_message=str(e))
            except Exception as e:
                logger.exception(f"[service] import of {source_location} failed unexpectedly")
                self._status.log(app_id, f"❌ Import failed: {e}", "error")
                return self._status.transition(
                    app_id, ApplicationStatus.ERROR, status_message=f"Unexpected error: {e}"
                )

            record = self._status.transition(
                app_id,
                ApplicationStatus.IMPORTED,
                raw_descriptor=text,
                current_version=fetched.revision,
                latest_version=fetched.revision,
                last_update_check=utcnow(),
                icon=annotations(document, self._settings.annotation_key).get("icon"),
                status_message=None,
            )
            self._status.log(app_id, f"✅ Imported {record.name}", "success")
            return record

    def import_descriptor(self, descriptor_text: str, name: Optional[str] = None) -> ApplicationRecord:
        document = parse_descriptor(descriptor_text)
        name = (name or "").strip() or descriptor_name(document) or service_names(document)[0]

        record = ApplicationFactory.from_descriptor(
            name=name,
            auto_update_interval_minutes=self._settings.default_auto_update_interval,
        )
        self._status.register(record)
        app_id = record.application_id

        self._status.transition(app_id, ApplicationStatus.IMPORTING)
        record = self._status.transition(
            app_id,
            ApplicationStatus.IMPORTED,
            raw_descriptor=descriptor_text,
            icon=annotations(document, self._settings.annotation_key).get("icon"),
        )
        self._status.log(app_id, f"✅ Descriptor for {name} imported", "success")
        return record

    # ============================================
    # PIPELINE
    # ============================================

    def _busy(self, record: ApplicationRecord) -> PipelineResult:
        return PipelineResult(
            success=False,
            message=f"Pipeline for {record.display_name} is already in progress",
            already_running=True,
        )

    async def _admitted_run(self, application_id: str, name: str, options: PipelineOptions) -> PipelineResult:
        try:
            return await self._queue.submit(
                application_id,
                lambda: self._pipeline.run(application_id, options),
                name=name,
            )
        finally:
            self._locks.release(application_id)

    async def run_pipeline(
        self,
        application_id: str,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        """Run the pipeline and wait for it to finish."""
        record = self._status.require(application_id)
        if not self._locks.try_acquire(application_id):
            return self._busy(record)
        return await self._admitted_run(application_id, record.display_name, options or PipelineOptions())

    def start_pipeline(
        self,
        application_id: str,
        options: Optional[PipelineOptions] = None,
    ) -> PipelineResult:
        """
        Start the pipeline in the background and return at once.

        Must be called from a running event loop. Completion is observed
        through the record status and the log stream.
        """
        record = self._status.require(application_id)
        if not self._locks.try_acquire(application_id):
            return self._busy(record)

        try:
            task = asyncio.get_running_loop().create_task(
                self._admitted_run(application_id, record.display_name, options or PipelineOptions())
            )
        except RuntimeError:
            self._locks.release(application_id)
            raise

        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        logger.info(f"[service] pipeline started for {application_id}")
        return PipelineResult(True, f"Pipeline started for {record.display_name}")

    async def wait_for_background_tasks(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # ============================================
    # DESCRIPTOR
    # ============================================

    def get_descriptor(self, application_id: str) -> Optional[str]:
        record = self._status.require(application_id)
        return record.working_descriptor or record.raw_descriptor

    def put_descriptor(self, application_id: str, descriptor_text: str) -> ApplicationRecord:
        """Replace the working descriptor as-is; applied by the next pipeline run."""
        parse_descriptor(descriptor_text)

        with self._locks.hold(application_id):
            record = self._status.require(application_id)
            changes = {"working_descriptor": descriptor_text}
            if not record.is_source_controlled:
                changes["raw_descriptor"] = descriptor_text

            record = self._status.update(application_id, **changes)
            self._status.log(application_id, "📝 Descriptor replaced manually", "system")
            return record

    def reconcile(self, application_id: str, incoming_text: str) -> DescriptorDiffResult:
        record = self._status.require(application_id)
        current = record.working_descriptor or record.raw_descriptor or ""
        return reconcile(current, incoming_text)

    # ============================================
    # START / STOP / REMOVE
    # ============================================

    async def toggle_running(self, application_id: str, start: bool) -> dict:
        with self._locks.hold(application_id):
            record = self._status.require(application_id)
            if not record.installed:
                raise ApplicationValidationError(f"{record.display_name} is not installed")

            target = ApplicationStatus.STARTING if start else ApplicationStatus.STOPPING
            verb = "start" if start else "stop"
            self._status.transition(application_id, target)
            self._status.log(application_id, f"{'▶️' if start else '⏹️'} Requested {verb}")

            try:
                if start:
                    outcome = await self._backend.start(record.display_name)
                else:
                    outcome = await self._backend.stop(record.display_name)
            except Exception as e:
                logger.exception(f"[service] {verb} of {application_id} failed")
                outcome = None
                message = str(e)
            else:
                message = outcome.message

            if outcome is None or not outcome.success:
                message = f"Failed to {verb} {record.display_name}: {message}"
                self._status.transition(application_id, ApplicationStatus.ERROR, status_message=message)
                self._status.log(application_id, f"❌ {message}", "error")
                return {"success": False, "message": message}

            message = f"{record.display_name} {'started' if start else 'stopped'}"
            self._status.transition(
                application_id,
                ApplicationStatus.SUCCESS,
                running=start,
                status_message=message,
            )
            self._status.log(application_id, f"✅ {message}", "success")
            return {"success": True, "message": message}

    async def remove_application(self, application_id: str, preserve_data: bool = True) -> dict:
        with self._locks.hold(application_id):
            record = self._status.require(application_id)
            name = record.display_name
            self._status.transition(application_id, ApplicationStatus.UNINSTALLING)
            self._status.log(application_id, f"🗑️ Removing {name} (preserve data: {preserve_data})")

            if record.installed:
                try:
                    outcome = await self._backend.remove(
                        name,
                        self._pipeline.descriptor_path(name),
                        remove_volumes=not preserve_data,
                    )
                    failure = None if outcome.success else outcome.message
                except Exception as e:
                    logger.exception(f"[service] removal of {application_id} failed")
                    failure = str(e)

                if failure is not None:
                    message = f"Failed to remove {name}: {failure}"
                    self._status.transition(application_id, ApplicationStatus.ERROR, status_message=message)
                    self._status.log(application_id, f"❌ {message}", "error")
                    return {"success": False, "message": message}

            await self._cleanup_files(application_id, name, preserve_data)

            try:
                self._tokens.revoke(name, application_id)
                self._status.remove(application_id)
            except Exception as e:
                logger.exception(f"[service] forgetting {application_id} failed")
                message = f"Failed to remove {name}: {e}"
                self._status.transition(application_id, ApplicationStatus.ERROR, status_message=message)
                self._status.log(application_id, f"❌ {message}", "error")
                return {"success": False, "message": message}

        self._locks.forget(application_id)
        logger.info(f"[service] removed {application_id}")
        return {"success": True, "message": f"{name} removed"}

    async def _cleanup_files(self, application_id: str, name: str, preserve_data: bool) -> None:
        targets = [
            os.path.dirname(self._pipeline.descriptor_path(name)),
            os.path.join(self._settings.repos_root, application_id),
        ]
        if not preserve_data:
            targets.append(self._provisioner.app_data_path(name))

        for path in targets:
            try:
                await self._fs.remove_tree(path)
            except Exception as e:
                self._status.log(application_id, f"⚠️ Could not remove {path}: {e}", "warning")

    # ============================================
    # UPDATES
    # ============================================

    async def check_updates(self, application_id: str) -> dict:
        record = self._status.require(application_id)
        if not record.is_source_controlled:
            raise ApplicationValidationError(f"{record.display_name} has no source to check")

        check = await self._fetcher.check_for_updates(application_id, record.source_location)
        record = self._status.update(
            application_id,
            current_version=check.current_version or record.current_version,
            latest_version=check.latest_version,
            last_update_check=utcnow(),
        )
        return {
            "application_id": application_id,
            "current_version": record.current_version,
            "latest_version": record.latest_version,
            "update_available": record.update_available(),
        }

    def set_auto_update(self, application_id: str, enabled: bool, interval: Optional[int] = None) -> ApplicationRecord:
        changes = {"auto_update": enabled}
        if interval is not None:
            validate_auto_update_interval(interval)
            changes["auto_update_interval_minutes"] = interval
        return self._status.update(application_id, **changes)

    # ============================================
    # READ
    # ============================================

    def get_application(self, application_id: str) -> ApplicationRecord:
        return self._status.require(application_id)

    def list_applications(self) -> List[ApplicationRecord]:
        return sorted(self._repo.list_all(), key=lambda r: r.created_at)

    def get_logs(self, application_id: str) -> List[dict]:
        self._status.require(application_id)
        return [event.to_dict() for event in self._log_stream.events_for(application_id)]

    def is_busy(self, application_id: str) -> bool:
        return self._locks.is_locked(application_id)

    def queue_status(self) -> dict:
        status = self._queue.status()
        status["recent_jobs"] = self._queue.recent_jobs()
        return status

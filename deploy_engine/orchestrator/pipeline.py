# deploy_engine/orchestrator/pipeline.py
"""
Deployment pipeline - the staged install/update of one application.

Flow:
1. Fetch the source tree (source-controlled)
2. Build the image (source-controlled)
3. Locate the descriptor, reconcile it against the applied one
4. Adopt the descriptor's name
5. Pre-install hook (first install only)
6. Capability token
7. Preprocess
8. Provision host paths
9. Write the descriptor
10. Apply (retried once on timeout)
11. Ownership reconciliation
12. Verify running state
13. Persist SUCCESS
14. Post-install hook
15. Inventory sync

The caller holds the application lock and has already been admitted by
the build queue.
"""

import asyncio
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from deploy_engine.core.errors import (
    ApplicationError,
    ApplyError,
    ApplyTimeoutError,
    DescriptorParseError,
    DescriptorWriteError,
    FetchError,
    HookExecutionError,
    PipelineError,
    TokenIssuanceError,
    VerificationMismatch,
)
from deploy_engine.core.factory import slugify
from deploy_engine.core.models import ApplicationRecord, ApplicationStatus
from deploy_engine.core.service import StatusService
from deploy_engine.core.state_machine import can_transition
from deploy_engine.descriptor.document import (
    annotations,
    descriptor_name,
    parse_descriptor,
    serialize_descriptor,
)
from deploy_engine.descriptor.preprocessor import DescriptorPreprocessor, host_volume_paths
from deploy_engine.descriptor.reconciler import apply_transfer, reconcile
from deploy_engine.executor.retry_policy import FailureKind, RetryPolicy
from deploy_engine.orchestrator.collaborators import (
    ApplyOutcome,
    DeploymentBackend,
    FetchResult,
    HookRunner,
    HostFilesystem,
    ImageBuilder,
    SourceFetcher,
)
from deploy_engine.orchestrator.provisioning import HostPathProvisioner
from deploy_engine.orchestrator.sync import InventorySync
from deploy_engine.orchestrator.tokens import CapabilityTokens

logger = logging.getLogger(__name__)


DESCRIPTOR_FILENAMES = (
    "docker-compose.yml",
    "docker-compose.yaml",
    "compose.yml",
    "compose.yaml",
)

RUNNABLE_STATUSES = (
    ApplicationStatus.IMPORTED,
    ApplicationStatus.SUCCESS,
    ApplicationStatus.ERROR,
)


@dataclass
class PipelineOptions:
    run_as_user: Optional[str] = None
    run_pre_install_hook: bool = True
    force_delete_existing_data: bool = False
    transfer_environment: bool = True


@dataclass
class PipelineResult:
    success: bool
    message: str
    already_running: bool = False

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "already_running": self.already_running,
        }


@dataclass
class _Run:
    record: ApplicationRecord
    options: PipelineOptions
    tree_path: Optional[str] = None
    image_ref: Optional[str] = None
    source_text: Optional[str] = None
    document: Dict[str, Any] = field(default_factory=dict)
    token: Optional[str] = None


# -------------------------
# SOURCE TREE
# -------------------------

def _read_tree_descriptor(tree_path: str) -> Optional[str]:
    for filename in DESCRIPTOR_FILENAMES:
        candidate = Path(tree_path) / filename
        if candidate.is_file():
            return candidate.read_text(encoding="utf-8")
    return None


async def fetch_descriptor(fetcher: SourceFetcher, record: ApplicationRecord) -> Tuple[FetchResult, str]:
    """Fetch the source tree and read its descriptor; raises FetchError / DescriptorParseError."""
    fetched = await fetcher.fetch(record.application_id, record.source_location)
    if fetched is None or not fetched.path:
        raise FetchError(f"Fetcher returned no working tree for {record.source_location}")

    text = await asyncio.to_thread(_read_tree_descriptor, fetched.path)
    if text is None:
        raise DescriptorParseError(
            f"No docker-compose file found in {record.source_location}"
        )
    return fetched, text


class DeploymentPipeline:
    def __init__(
        self,
        *,
        status: StatusService,
        fetcher: SourceFetcher,
        builder: ImageBuilder,
        backend: DeploymentBackend,
        hooks: HookRunner,
        tokens: CapabilityTokens,
        filesystem: HostFilesystem,
        provisioner: HostPathProvisioner,
        sync: Optional[InventorySync],
        settings,
        retry_policy: Optional[RetryPolicy] = None,
        sleep=asyncio.sleep,
    ):
        self._status = status
        self._fetcher = fetcher
        self._builder = builder
        self._backend = backend
        self._hooks = hooks
        self._tokens = tokens
        self._fs = filesystem
        self._provisioner = provisioner
        self._sync = sync
        self._settings = settings
        self._retry = retry_policy or RetryPolicy(
            max_retries=1,
            timeout_factor=settings.apply_retry_timeout_factor,
        )
        self._sleep = sleep
        self._preprocessor = DescriptorPreprocessor(settings)

    def descriptor_path(self, display_name: str) -> str:
        return os.path.join(self._settings.apps_root, display_name, "docker-compose.yml")

    def _log(self, application_id: str, message: str, level: str = "info") -> None:
        self._status.log(application_id, message, level)

    # ============================================
    # RUN
    # ============================================

    async def run(self, application_id: str, options: Optional[PipelineOptions] = None) -> PipelineResult:
        options = options or PipelineOptions()
        record = self._status.require(application_id)

        if record.status not in RUNNABLE_STATUSES:
            message = f"Cannot run pipeline while {record.display_name} is {record.status.value}"
            logger.warning(f"[pipeline] {message}")
            return PipelineResult(False, message)

        run = _Run(record=record, options=options)
        logger.info(f"[pipeline] ▶️ {application_id} ({record.display_name})")
        self._log(application_id, f"🚀 Starting pipeline for {record.display_name}", "system")

        try:
            message = await self._execute(run)
        except PipelineError as e:
            return self._fail(run, e)
        except ApplicationError as e:
            return self._fail(run, PipelineError(str(e)))
        except Exception as e:
            logger.exception(f"[pipeline] unexpected failure for {application_id}")
            return self._fail(run, PipelineError(f"Unexpected error: {e}"))

        logger.info(f"[pipeline] ✅ {application_id}: {message}")
        return PipelineResult(True, message)

    def _fail(self, run: _Run, error: PipelineError) -> PipelineResult:
        application_id = run.record.application_id
        message = str(error)

        logger.error(f"[pipeline] ❌ {application_id} failed at {error.stage}: {message}")
        self._log(application_id, f"❌ {error.stage} failed: {message}", "error")

        try:
            current = self._status.require(application_id)
            if can_transition(current.status, ApplicationStatus.ERROR):
                self._status.transition(application_id, ApplicationStatus.ERROR, status_message=message)
            else:
                self._status.update(application_id, status_message=message)
        except ApplicationError as e:
            logger.error(f"[pipeline] could not record failure for {application_id}: {e}")

        return PipelineResult(False, message)

    async def _execute(self, run: _Run) -> str:
        app_id = run.record.application_id
        options = run.options

        # 1-2. Source and image
        if run.record.is_source_controlled:
            run.record = self._status.transition(app_id, ApplicationStatus.BUILDING, status_message=None)
            await self._fetch(run)
            await self._build(run)

        # 3. Descriptor
        run.record = self._status.transition(app_id, ApplicationStatus.INSTALLING, status_message=None)
        self._locate_descriptor(run)
        self._reconcile(run)

        # 4. Name
        self._adopt_name(run)
        display_name = run.record.display_name

        # 5. Pre-install hook
        await self._pre_install(run)

        # 6. Token
        self._issue_token(run)

        # 7. Preprocess
        processed = self._preprocessor.process(run.document, display_name, run.image_ref, run.token)
        self._log(app_id, "✅ Descriptor preprocessed")

        # 8. Host paths
        if options.force_delete_existing_data:
            try:
                await self._provisioner.wipe(display_name)
            except Exception as e:
                raise PipelineError(f"Could not delete existing data: {e}", stage="provision") from e
            self._log(app_id, "🗑️ Existing application data deleted", "warning")

        paths = host_volume_paths(processed.clean, self._settings.data_root)
        self._log(app_id, f"📁 Provisioning {len(paths)} host path(s)")
        self._warn_all(app_id, await self._provisioner.provision(paths))

        # 9. Write
        descriptor_path = await self._write(run, processed.clean)

        # 10. Apply
        await self._apply(run, descriptor_path)

        # 11. Ownership
        owned = list(paths) + [self._provisioner.app_data_path(display_name)]
        self._warn_all(app_id, await self._provisioner.reconcile_ownership(owned))

        # 12. Verify
        running = await self._verify(run)

        # 13. Persist
        if running:
            message = "Application is running"
        else:
            mismatch = VerificationMismatch(f"{display_name} installed but not running")
            self._log(app_id, f"⚠️ {mismatch}", "warning")
            message = str(mismatch)

        run.record = self._status.transition(
            app_id,
            ApplicationStatus.SUCCESS,
            installed=True,
            running=running,
            working_descriptor=run.source_text,
            status_message=message,
            icon=annotations(processed.rich, self._settings.annotation_key).get("icon") or run.record.icon,
        )
        self._log(app_id, f"✅ Installation completed. {message}", "success")

        # 14. Post-install hook
        if running:
            await self._post_install(run)
        else:
            self._log(app_id, "⏭️ Skipping post-install command - app is not running")

        # 15. Sync
        await self._notify_sync(app_id)

        return message

    # ============================================
    # STAGES
    # ============================================

    async def _fetch(self, run: _Run) -> None:
        app_id = run.record.application_id
        self._log(app_id, f"📥 Fetching {run.record.source_location}")

        fetched, text = await fetch_descriptor(self._fetcher, run.record)
        run.tree_path = fetched.path
        run.record = self._status.update(
            app_id,
            raw_descriptor=text,
            current_version=fetched.revision,
            latest_version=fetched.revision,
        )
        self._log(app_id, f"✅ Source fetched (revision {fetched.revision or 'unknown'})", "success")

    async def _build(self, run: _Run) -> None:
        app_id = run.record.application_id
        tag = f"{slugify(run.record.name)}:latest"
        self._log(app_id, f"🏗️ Building image {tag}")

        run.image_ref = await self._builder.build(app_id, run.tree_path, tag)
        self._log(app_id, f"🐳 Built image {run.image_ref}", "success")

    def _locate_descriptor(self, run: _Run) -> None:
        text = run.record.raw_descriptor
        if not text:
            raise DescriptorParseError(f"No descriptor found for {run.record.display_name}")

        run.source_text = text
        run.document = parse_descriptor(text)
        self._log(run.record.application_id, "✅ Descriptor parsed")

    def _reconcile(self, run: _Run) -> None:
        record = run.record
        if not (record.installed and record.working_descriptor):
            return

        app_id = record.application_id
        result = reconcile(record.working_descriptor, run.source_text)

        for warning in result.warnings:
            self._log(app_id, f"⚠️ {warning}", "warning")

        if result.structurally_changed:
            self._log(app_id, "🔀 Incoming descriptor has structural changes")
        else:
            self._log(app_id, "Incoming descriptor differs only in environment values")

        if not run.options.transfer_environment or not result.transfer_map:
            return

        merged = apply_transfer(run.source_text, result.transfer_map)
        kept = ", ".join(
            f"{service}.{key}" for service, keys in result.transferable_keys.items() for key in keys
        )
        self._log(app_id, f"♻️ Kept customized environment values: {kept}")

        run.source_text = merged
        run.document = parse_descriptor(merged)

    def _adopt_name(self, run: _Run) -> None:
        name = descriptor_name(run.document)
        if not name or name == run.record.display_name:
            return
        try:
            run.record = self._status.update(run.record.application_id, display_name=name)
            self._log(run.record.application_id, f"🏷️ Using app name from descriptor: {name}")
        except ApplicationError as e:
            self._log(run.record.application_id, f"⚠️ Could not adopt name {name}: {e}", "warning")

    def _hook_user(self, run: _Run) -> str:
        return run.options.run_as_user or self._settings.service_user

    async def _run_hook(self, run: _Run, command: str, label: str) -> None:
        app_id = run.record.application_id
        user = self._hook_user(run)
        self._log(app_id, f"📜 {label} command (user: {user}): {command}", "system")

        result = await self._hooks.run(command, user, self._settings.hook_timeout_seconds)
        for line in result.output:
            if line.strip():
                self._log(app_id, f"📤 {line}")

        if not result.success:
            raise HookExecutionError(f"{label} command exited with code {result.exit_code}")

    async def _pre_install(self, run: _Run) -> None:
        app_id = run.record.application_id

        if run.record.installed:
            self._log(app_id, "⏭️ Skipping pre-install command - app is already installed (update mode)")
            return
        if not run.options.run_pre_install_hook:
            self._log(app_id, "⏭️ Pre-install command disabled for this run")
            return

        command = annotations(run.document, self._settings.annotation_key).get("pre-install-cmd")
        if not command or not isinstance(command, str):
            self._log(app_id, "ℹ️ No pre-install-cmd found, skipping.")
            return

        await self._run_hook(run, command, "Pre-install")
        self._log(app_id, "✅ Pre-install command executed successfully.", "success")

    async def _post_install(self, run: _Run) -> None:
        app_id = run.record.application_id
        command = annotations(run.document, self._settings.annotation_key).get("post-install-cmd")
        if not command or not isinstance(command, str):
            return
        try:
            await self._run_hook(run, command, "Post-install")
            self._log(app_id, "✅ Post-install command completed", "success")
        except Exception as e:
            self._log(app_id, f"⚠️ Post-install command failed: {e}", "warning")

    def _issue_token(self, run: _Run) -> None:
        app_id = run.record.application_id
        try:
            token = self._tokens.issue(
                run.record.display_name,
                app_id,
                already_installed=run.record.installed,
            )
        except TokenIssuanceError as e:
            self._log(app_id, f"⚠️ {e}", "warning")
            return
        run.token = token.token if token else None

    async def _write(self, run: _Run, document: Dict[str, Any]) -> str:
        path = self.descriptor_path(run.record.display_name)
        try:
            await self._fs.ensure_directory(os.path.dirname(path), self._provisioner.owner)
            await self._fs.write_text(path, serialize_descriptor(document))
        except Exception as e:
            raise DescriptorWriteError(f"Could not write {path}: {e}") from e

        self._log(run.record.application_id, f"💾 Descriptor written to {path}")
        return path

    async def _apply(self, run: _Run, descriptor_path: str) -> ApplyOutcome:
        app_id = run.record.application_id
        project = run.record.display_name
        timeout = self._settings.apply_timeout_seconds
        attempt = 1

        while True:
            self._log(app_id, f"🚀 Applying descriptor (attempt {attempt}, timeout {timeout:.0f}s)")
            try:
                outcome = await self._backend.apply(project, descriptor_path, timeout)
            except ApplyError as e:
                outcome = ApplyOutcome(False, str(e), timed_out=isinstance(e, ApplyTimeoutError))

            if outcome.success:
                self._log(app_id, "✅ Descriptor applied", "success")
                return outcome

            kind = self._retry.classify(outcome)
            if not self._retry.should_retry(kind, attempt):
                if kind == FailureKind.TIMEOUT:
                    suffix = " after retry" if attempt > 1 else ""
                    raise ApplyTimeoutError(
                        f"Apply timed out{suffix} ({attempt} attempt(s), last timeout {timeout:.0f}s): {outcome.message}"
                    )
                raise ApplyError(f"Apply failed: {outcome.message}")

            timeout = self._retry.next_timeout(timeout)
            attempt += 1
            self._log(app_id, f"⚠️ Apply timed out, retrying with {timeout:.0f}s", "warning")

    async def _verify(self, run: _Run) -> bool:
        app_id = run.record.application_id
        delay = self._settings.settle_delay_seconds
        if delay > 0:
            self._log(app_id, f"⏳ Waiting {delay:g}s for the backend to settle")
            await self._sleep(delay)

        try:
            return bool(await self._backend.is_running(run.record.display_name))
        except Exception as e:
            self._log(app_id, f"⚠️ Could not query running state: {e}", "warning")
            return False

    async def _notify_sync(self, application_id: str) -> None:
        if self._sync is None:
            return
        try:
            await self._sync.sync()
        except Exception as e:
            self._log(application_id, f"⚠️ Inventory sync failed: {e}", "warning")

    def _warn_all(self, application_id: str, failures) -> None:
        for failure in failures:
            self._log(application_id, f"⚠️ {failure}", "warning")

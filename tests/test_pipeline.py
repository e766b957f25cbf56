#tests\test_pipeline.py

"""Deployment pipeline end to end, with fake collaborators."""

import asyncio

import pytest

from deploy_engine.core.models import ApplicationStatus, TRANSIENT_STATUSES
from deploy_engine.descriptor.document import parse_descriptor, service_environments
from deploy_engine.orchestrator.collaborators import ApplyOutcome
from deploy_engine.orchestrator.pipeline import PipelineOptions


SOURCE_URL = "https://example.com/org/app.git"

HOOKED_COMPOSE = """\
services:
  web:
    image: nginx:alpine
    environment:
      - FOO=bar
x-casaos:
  pre-install-cmd: echo pre
  post-install-cmd: echo post
"""


async def _import_and_run(harness, options=None):
    record = await harness.service.import_application(SOURCE_URL)
    result = await harness.service.run_pipeline(record.application_id, options)
    return harness.service.get_application(record.application_id), result


def _written_env(harness, display_name):
    return service_environments(parse_descriptor(harness.written(display_name)))


class TestFirstInstall:
    """Import a repository and install it."""

    def test_import_then_install_reaches_success(self, harness):
        record, result = asyncio.run(_import_and_run(harness))

        assert result.success
        assert record.status == ApplicationStatus.SUCCESS
        assert record.installed
        assert record.running
        assert record.last_build_time is not None
        assert record.working_descriptor is not None

    def test_import_only_fetches(self, harness):
        async def scenario():
            return await harness.service.import_application(SOURCE_URL)

        record = asyncio.run(scenario())

        assert record.status == ApplicationStatus.IMPORTED
        assert record.name == "app"
        assert record.current_version == "rev-1"
        assert harness.builder.builds == []
        assert harness.backend.applies == []

    def test_builds_image_and_writes_processed_descriptor(self, harness):
        record, _ = asyncio.run(_import_and_run(harness))

        assert harness.builder.builds == ["app:latest"]

        written = parse_descriptor(harness.written(record.display_name))
        web = written["services"]["web"]
        assert web["image"] == "app:latest"
        assert "ports" not in web
        assert web["expose"] == ["80"]
        assert web["hostname"] == "app"
        assert web["volumes"] == ["/DATA/AppData/app/data:/data"]
        assert written["x-casaos"]["store_app_id"] == "app"

    def test_provisions_host_paths_with_owner(self, harness):
        asyncio.run(_import_and_run(harness))

        assert harness.filesystem.directories["/DATA/AppData/app/data"] == "1000:1000"

    def test_apply_uses_display_name_and_descriptor_path(self, harness):
        record, _ = asyncio.run(_import_and_run(harness))

        apply = harness.backend.applies[0]
        assert apply["project"] == "app"
        assert apply["path"] == "/DATA/AppData/casaos/apps/app/docker-compose.yml"
        assert apply["timeout"] == 600

    def test_installed_but_not_running_is_success(self, harness):
        harness.backend.running = False

        record, result = asyncio.run(_import_and_run(harness))

        assert result.success
        assert record.status == ApplicationStatus.SUCCESS
        assert record.installed
        assert not record.running
        assert "not running" in record.status_message

    def test_sync_runs_after_install(self, harness):
        asyncio.run(_import_and_run(harness))

        assert len(harness.notifier.notifications) == 1
        assert harness.notifier.notifications[0][0].name == "app"

    def test_issues_token_on_first_install(self, harness):
        record, _ = asyncio.run(_import_and_run(harness))

        token = harness.token_store.get("app", record.application_id)
        assert token is not None
        assert len(token.token) == 64

    def test_descriptor_only_install_skips_fetch_and_build(self, harness):
        async def scenario():
            record = harness.service.import_descriptor(HOOKED_COMPOSE, name="notes")
            result = await harness.service.run_pipeline(record.application_id)
            return harness.service.get_application(record.application_id), result

        record, result = asyncio.run(scenario())

        assert result.success
        assert record.status == ApplicationStatus.SUCCESS
        assert harness.fetcher.calls == []
        assert harness.builder.builds == []
        assert parse_descriptor(harness.written("notes"))["services"]["web"]["image"] == "nginx:alpine"


class TestUpdate:
    """Re-running the pipeline on an installed application."""

    def test_environment_only_change_keeps_user_value(self, harness):
        async def scenario():
            record, first = await _import_and_run(harness)
            assert first.success
            assert _written_env(harness, record.display_name)["web"]["FOO"] == "bar"

            harness.fetcher.descriptor = harness.fetcher.descriptor.replace("FOO=bar", "FOO=baz")
            harness.fetcher.revision = "rev-2"

            diff = harness.service.reconcile(
                record.application_id, harness.fetcher.descriptor
            )
            second = await harness.service.run_pipeline(record.application_id)
            return record, diff, second

        record, diff, second = asyncio.run(scenario())

        assert not diff.structurally_changed
        assert diff.transfer_map == {"web": {"FOO": "bar"}}
        assert second.success
        assert _written_env(harness, record.display_name)["web"]["FOO"] == "bar"

        updated = harness.service.get_application(record.application_id)
        assert "FOO=bar" in updated.working_descriptor
        assert updated.current_version == "rev-2"

    @pytest.mark.parametrize("written, upstream", [
        ("[FOO=bar]", "[FOO=baz]"),
        ("{FOO: bar}", "{FOO: baz}"),
    ])
    def test_flow_style_environment_keeps_user_value(self, harness, written, upstream):
        compose = "services:\n  web:\n    image: nginx:alpine\n    environment: {}\n"
        harness.fetcher.descriptor = compose.format(written)

        async def scenario():
            record, first = await _import_and_run(harness)
            assert first.success

            harness.fetcher.descriptor = compose.format(upstream)
            diff = harness.service.reconcile(record.application_id, harness.fetcher.descriptor)
            second = await harness.service.run_pipeline(record.application_id)
            return record, diff, second

        record, diff, second = asyncio.run(scenario())

        assert not diff.structurally_changed
        assert diff.transfer_map == {"web": {"FOO": "bar"}}
        assert second.success
        assert _written_env(harness, record.display_name)["web"]["FOO"] == "bar"

        updated = harness.service.get_application(record.application_id)
        assert updated.status == ApplicationStatus.SUCCESS
        assert f"environment: {written}" in updated.working_descriptor

    def test_transfer_disabled_takes_upstream_value(self, harness):
        async def scenario():
            record, _ = await _import_and_run(harness)
            harness.fetcher.descriptor = harness.fetcher.descriptor.replace("FOO=bar", "FOO=baz")
            await harness.service.run_pipeline(
                record.application_id, PipelineOptions(transfer_environment=False)
            )
            return record

        record = asyncio.run(scenario())

        assert _written_env(harness, record.display_name)["web"]["FOO"] == "baz"

    def test_structural_change_is_applied(self, harness):
        async def scenario():
            record, _ = await _import_and_run(harness)
            harness.fetcher.descriptor = harness.fetcher.descriptor.replace(
                "nginx:alpine", "nginx:1.27"
            ).replace("FOO=bar", "FOO=baz")
            result = await harness.service.run_pipeline(record.application_id)
            return record, result

        record, result = asyncio.run(scenario())

        assert result.success
        assert any("structural changes" in m for m in harness.messages(record.application_id))
        assert _written_env(harness, record.display_name)["web"]["FOO"] == "bar"

    def test_reinstall_keeps_existing_token(self, harness):
        async def scenario():
            record, _ = await _import_and_run(harness)
            first = harness.token_store.get("app", record.application_id).token
            await harness.service.run_pipeline(record.application_id)
            return first, harness.token_store.get("app", record.application_id).token

        first, second = asyncio.run(scenario())

        assert first == second


class TestHooks:
    """Pre- and post-install commands."""

    def _descriptor_app(self, harness):
        return harness.service.import_descriptor(HOOKED_COMPOSE, name="hooked")

    def test_pre_and_post_install_run_on_first_install(self, harness):
        async def scenario():
            record = self._descriptor_app(harness)
            return await harness.service.run_pipeline(record.application_id)

        result = asyncio.run(scenario())

        assert result.success
        assert [c["command"] for c in harness.hooks.calls] == ["echo pre", "echo post"]
        assert all(c["user"] == "ubuntu" for c in harness.hooks.calls)

    def test_run_as_user_overrides_service_user(self, harness):
        async def scenario():
            record = self._descriptor_app(harness)
            await harness.service.run_pipeline(
                record.application_id, PipelineOptions(run_as_user="root")
            )

        asyncio.run(scenario())

        assert harness.hooks.calls[0]["user"] == "root"

    def test_pre_install_never_runs_when_installed(self, harness):
        async def scenario():
            record = self._descriptor_app(harness)
            await harness.service.run_pipeline(record.application_id)
            harness.hooks.calls.clear()
            return await harness.service.run_pipeline(
                record.application_id, PipelineOptions(run_pre_install_hook=True)
            )

        result = asyncio.run(scenario())

        assert result.success
        assert "echo pre" not in [c["command"] for c in harness.hooks.calls]

    def test_pre_install_can_be_disabled(self, harness):
        async def scenario():
            record = self._descriptor_app(harness)
            await harness.service.run_pipeline(
                record.application_id, PipelineOptions(run_pre_install_hook=False)
            )

        asyncio.run(scenario())

        assert [c["command"] for c in harness.hooks.calls] == ["echo post"]

    def test_failing_pre_install_is_fatal(self, harness):
        harness.hooks.exit_code = 3

        async def scenario():
            record = self._descriptor_app(harness)
            result = await harness.service.run_pipeline(record.application_id)
            return harness.service.get_application(record.application_id), result

        record, result = asyncio.run(scenario())

        assert not result.success
        assert record.status == ApplicationStatus.ERROR
        assert "exited with code 3" in record.status_message
        assert harness.backend.applies == []

    def test_hook_commands_are_not_written(self, harness):
        async def scenario():
            record = self._descriptor_app(harness)
            await harness.service.run_pipeline(record.application_id)

        asyncio.run(scenario())

        annotations = parse_descriptor(harness.written("hooked"))["x-casaos"]
        assert "pre-install-cmd" not in annotations
        assert "post-install-cmd" not in annotations


class TestApplyRetry:
    """The apply step is retried once, on timeout only."""

    def test_single_timeout_is_retried_with_larger_budget(self, harness):
        harness.backend.outcomes = [ApplyOutcome(False, "compose up timed out", timed_out=True)]

        record, result = asyncio.run(_import_and_run(harness))

        assert result.success
        assert record.status == ApplicationStatus.SUCCESS
        timeouts = [a["timeout"] for a in harness.backend.applies]
        assert len(timeouts) == 2
        assert timeouts[1] > timeouts[0]

    def test_double_timeout_fails_after_retry(self, harness):
        harness.backend.outcomes = [
            ApplyOutcome(False, "timed out", timed_out=True),
            ApplyOutcome(False, "timed out", timed_out=True),
        ]

        record, result = asyncio.run(_import_and_run(harness))

        assert not result.success
        assert "timed out after retry" in result.message
        assert record.status == ApplicationStatus.ERROR
        assert "timed out after retry" in record.status_message
        assert len(harness.backend.applies) == 2

    def test_other_failure_is_not_retried(self, harness):
        harness.backend.outcomes = [ApplyOutcome(False, "port is already allocated")]

        record, result = asyncio.run(_import_and_run(harness))

        assert not result.success
        assert record.status == ApplicationStatus.ERROR
        assert len(harness.backend.applies) == 1
        assert "port is already allocated" in result.message


class TestFailures:
    """Fatal and non-fatal stage failures."""

    def test_build_failure_sets_error(self, harness):
        from deploy_engine.core.errors import BuildError

        harness.builder.error = BuildError("No Dockerfile in /app/repos/app")

        record, result = asyncio.run(_import_and_run(harness))

        assert not result.success
        assert record.status == ApplicationStatus.ERROR
        assert "No Dockerfile" in record.status_message

    def test_missing_descriptor_in_tree_fails(self, harness):
        async def scenario():
            record = await harness.service.import_application(SOURCE_URL)
            harness.fetcher.descriptor = None
            result = await harness.service.run_pipeline(record.application_id)
            return harness.service.get_application(record.application_id), result

        record, result = asyncio.run(scenario())

        assert not result.success
        assert record.status == ApplicationStatus.ERROR

    def test_provisioning_failure_is_only_a_warning(self, harness):
        harness.filesystem.failing.append("/DATA/AppData/app/data")

        record, result = asyncio.run(_import_and_run(harness))

        assert result.success
        assert record.status == ApplicationStatus.SUCCESS
        assert any("Could not provision" in m for m in harness.messages(record.application_id))

    def test_write_failure_is_fatal(self, harness):
        harness.filesystem.failing.append("/DATA/AppData/casaos/apps/app/docker-compose.yml")

        record, result = asyncio.run(_import_and_run(harness))

        assert not result.success
        assert record.status == ApplicationStatus.ERROR
        assert harness.backend.applies == []

    def test_force_delete_wipes_app_data(self, harness):
        asyncio.run(_import_and_run(harness, PipelineOptions(force_delete_existing_data=True)))

        assert "/DATA/AppData/app" in harness.filesystem.removed

    def test_no_transient_status_after_return(self, harness):
        scenarios = [
            [],
            [ApplyOutcome(False, "boom")],
            [ApplyOutcome(False, "t", timed_out=True), ApplyOutcome(False, "t", timed_out=True)],
        ]

        for outcomes in scenarios:
            harness.backend.outcomes = list(outcomes)

            async def scenario():
                record = harness.service.import_descriptor(HOOKED_COMPOSE)
                await harness.service.run_pipeline(record.application_id)
                return harness.service.get_application(record.application_id)

            record = asyncio.run(scenario())
            assert record.status not in TRANSIENT_STATUSES
            assert record.status in (ApplicationStatus.SUCCESS, ApplicationStatus.ERROR)

    def test_pipeline_refuses_non_runnable_status(self, harness):
        async def scenario():
            record = await harness.service.import_application(SOURCE_URL)
            harness.status.transition(record.application_id, ApplicationStatus.BUILDING)
            return await harness.pipeline.run(record.application_id)

        result = asyncio.run(scenario())

        assert not result.success
        assert "BUILDING" in result.message


class TestConcurrency:
    """One pipeline per application at a time."""

    def test_second_run_is_rejected_while_first_in_flight(self, harness):
        async def scenario():
            record = await harness.service.import_application(SOURCE_URL)
            app_id = record.application_id

            harness.backend.gate = asyncio.Event()
            harness.backend.entered = asyncio.Event()

            first = asyncio.create_task(harness.service.run_pipeline(app_id))
            await harness.backend.entered.wait()

            second = await harness.service.run_pipeline(app_id)
            started = harness.service.start_pipeline(app_id)
            assert harness.service.is_busy(app_id)

            harness.backend.gate.set()
            return await first, second, started

        first, second, started = asyncio.run(scenario())

        assert first.success
        assert not second.success
        assert second.already_running
        assert "already in progress" in second.message
        assert started.already_running
        assert len(harness.backend.applies) == 1

    def test_start_pipeline_returns_immediately(self, harness):
        async def scenario():
            record = await harness.service.import_application(SOURCE_URL)
            started = harness.service.start_pipeline(record.application_id)
            await harness.service.wait_for_background_tasks()
            return record, started

        record, started = asyncio.run(scenario())

        assert started.success
        assert "Pipeline started" in started.message
        assert harness.service.get_application(record.application_id).status == ApplicationStatus.SUCCESS
        assert not harness.service.is_busy(record.application_id)

    def test_different_applications_run_concurrently(self, harness):
        async def scenario():
            a = harness.service.import_descriptor(HOOKED_COMPOSE, name="alpha")
            b = harness.service.import_descriptor(HOOKED_COMPOSE, name="beta")
            return await asyncio.gather(
                harness.service.run_pipeline(a.application_id),
                harness.service.run_pipeline(b.application_id),
            )

        results = asyncio.run(scenario())

        assert all(r.success for r in results)
        assert {a["project"] for a in harness.backend.applies} == {"alpha", "beta"}

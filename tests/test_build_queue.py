#tests\test_build_queue.py

"""Build queue admission."""

import asyncio

import pytest

from deploy_engine.executor.build_queue import BuildQueue
from deploy_engine.orchestrator.collaborators import ApplyOutcome


class TestBuildQueue:
    def test_runs_job_and_returns_result(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=1)

            async def job():
                return ApplyOutcome(True, "ok")

            result = await queue.submit("app-1", job, name="app")
            return queue, result

        queue, result = asyncio.run(scenario())

        assert result.success
        assert queue.recent_jobs()[0]["status"] == "completed"
        assert queue.recent_jobs()[0]["name"] == "app"

    def test_concurrency_is_bounded(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=2)
            active = 0
            peak = 0

            async def job():
                nonlocal active, peak
                active += 1
                peak = max(peak, active)
                await asyncio.sleep(0.01)
                active -= 1
                return ApplyOutcome(True)

            await asyncio.gather(*(queue.submit(f"app-{i}", job) for i in range(5)))
            return peak

        assert asyncio.run(scenario()) == 2

    def test_admits_in_submission_order(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=1)
            order = []

            def job_for(name):
                async def job():
                    order.append(name)
                    await asyncio.sleep(0)
                    return ApplyOutcome(True)
                return job

            await asyncio.gather(*(queue.submit(name, job_for(name)) for name in ["a", "b", "c", "d"]))
            return order

        assert asyncio.run(scenario()) == ["a", "b", "c", "d"]

    def test_failed_result_and_exception_are_recorded(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=1)

            async def failing():
                return ApplyOutcome(False, "apply failed")

            async def raising():
                raise RuntimeError("boom")

            await queue.submit("app-1", failing)
            with pytest.raises(RuntimeError):
                await queue.submit("app-2", raising)
            return queue

        queue = asyncio.run(scenario())
        recent = queue.recent_jobs()

        assert [job["status"] for job in recent] == ["failed", "failed"]
        assert recent[0]["error"] == "boom"
        assert recent[1]["error"] == "apply failed"
        assert queue.status()["running"] == 0

    def test_status_while_running(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=1)
            release = asyncio.Event()
            started = asyncio.Event()

            async def blocking():
                started.set()
                await release.wait()
                return ApplyOutcome(True)

            async def quick():
                return ApplyOutcome(True)

            first = asyncio.create_task(queue.submit("app-1", blocking))
            await started.wait()
            second = asyncio.create_task(queue.submit("app-2", quick))
            await asyncio.sleep(0)

            snapshot = queue.status()
            building = queue.is_building("app-1")
            queued = queue.is_queued("app-2")

            release.set()
            await asyncio.gather(first, second)
            return snapshot, building, queued

        snapshot, building, queued = asyncio.run(scenario())

        assert building
        assert queued
        assert snapshot["max_concurrent"] == 1
        assert snapshot["running"] == 1
        assert snapshot["queued"] == 1
        assert "run_seconds" in snapshot["running_jobs"][0]
        assert "wait_seconds" in snapshot["queued_jobs"][0]

    def test_requires_at_least_one_slot(self):
        with pytest.raises(ValueError):
            BuildQueue(max_concurrent=0)

    def test_slots_are_freed_after_each_job(self):
        async def scenario():
            queue = BuildQueue(max_concurrent=2)
            during = []

            async def job():
                during.append(queue.free_slots())
                return ApplyOutcome(True)

            await queue.submit("app-1", job)
            await queue.submit("app-1", job)
            return queue, during

        queue, during = asyncio.run(scenario())

        assert during == [1, 1]
        assert queue.free_slots() == 2
        assert len(queue.recent_jobs()) == 2

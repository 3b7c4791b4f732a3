"""Tests for periodic background tasks."""

import asyncio

import pytest

from cms_backend.container import register_background_tasks
from cms_backend.services.page_service import PageCreate
from cms_backend.tasks import BackgroundTasksRunner


class TestBackgroundTasksRunner:
    @pytest.mark.asyncio
    async def test_run_once_sync_and_async(self):
        runner = BackgroundTasksRunner()
        calls = []

        async def async_action():
            calls.append("async")

        sync_task = runner.add("sync", 60, lambda: calls.append("sync"))
        async_task = runner.add("async", 60, async_action)
        await runner.run_once(sync_task)
        await runner.run_once(async_task)

        assert calls == ["sync", "async"]
        assert (sync_task.runs, async_task.runs) == (1, 1)

    @pytest.mark.asyncio
    async def test_failure_counted_not_raised(self):
        runner = BackgroundTasksRunner()

        def explode():
            raise RuntimeError("boom")

        task = runner.add("explode", 60, explode)
        await runner.run_once(task)
        assert task.failures == 1
        assert task.runs == 0

    @pytest.mark.asyncio
    async def test_failing_task_does_not_stop_siblings(self):
        runner = BackgroundTasksRunner()
        ticks = []

        def explode():
            raise RuntimeError("boom")

        failing = runner.add("explode", 0.01, explode)
        healthy = runner.add("tick", 0.01, lambda: ticks.append(1))

        runner.start()
        assert runner.is_running
        await asyncio.sleep(0.1)
        await runner.stop()

        assert not runner.is_running
        assert failing.failures >= 2
        assert healthy.runs >= 2
        assert len(ticks) == healthy.runs

    @pytest.mark.asyncio
    async def test_stop_cancels_long_running_action(self):
        runner = BackgroundTasksRunner()
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(3600)

        runner.add("hang", 0, hang)
        runner.start()
        await started.wait()
        await asyncio.wait_for(runner.stop(), timeout=1)
        assert not runner.is_running

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self):
        runner = BackgroundTasksRunner()
        runner.add("noop", 60, lambda: None)
        runner.start()
        first = list(runner._running)
        runner.start()
        assert runner._running == first
        await runner.stop()


class TestRegisteredTasks:
    @pytest.mark.asyncio
    async def test_maintenance_tasks(self, container, png_bytes):
        await container.uploads.upload(png_bytes(), "logo.png", "image/png")
        runner = register_background_tasks(container)
        names = [t.name for t in runner.tasks]
        assert names[:3] == ["hash-lock-sweep", "record-lock-sweep", "tombstone-purge"]

        sweep = runner.tasks[0]
        await runner.run_once(sweep)
        assert sweep.runs == 1
        assert len(container.uploads.hash_locks) == 0

    @pytest.mark.asyncio
    async def test_record_lock_sweep_task(self, container):
        page = await container.pages.create(PageCreate(name="about", title="About", slug="about"))
        await container.indexer.index_entity("Page", page.id)
        assert len(container.indexer.record_locks) == 1

        runner = register_background_tasks(container)
        sweep = next(t for t in runner.tasks if t.name == "record-lock-sweep")
        await runner.run_once(sweep)
        assert sweep.runs == 1
        assert len(container.indexer.record_locks) == 0

"""Tests for ciflow.orchestration.parallel."""
from __future__ import annotations

import asyncio
from unittest.mock import Mock

import pytest

from ciflow.orchestration import ParallelTask, ParallelTimeoutError, run_tasks_in_parallel


class ConcurrencyTracker:
    """Tasks that block until released and record peak concurrency."""

    def __init__(self):
        self.running = 0
        self.peak = 0
        self.release = asyncio.Event()

    async def work(self, value):
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await self.release.wait()
            return value
        finally:
            self.running -= 1


class TestBasicExecution:
    """Tests for normal batch execution."""

    @pytest.mark.asyncio
    async def test_zero_tasks_returns_immediately(self):
        assert await run_tasks_in_parallel([], timeout=0.001) == []

    @pytest.mark.asyncio
    async def test_results_by_name(self):
        async def double(x):
            await asyncio.sleep(0)
            return x * 2

        tasks = [ParallelTask(name=f"t{i}", func=double, args=(i,)) for i in range(5)]
        results = await run_tasks_in_parallel(tasks)

        by_name = {r.name: r for r in results}
        assert set(by_name) == {"t0", "t1", "t2", "t3", "t4"}
        assert all(r.success for r in results)
        assert by_name["t3"].result == 6
        assert all(r.duration >= 0 for r in results)

    @pytest.mark.asyncio
    async def test_sync_callables_are_supported(self):
        results = await run_tasks_in_parallel([ParallelTask(name="sync", func=lambda: "done")])
        assert results[0].success is True
        assert results[0].result == "done"

    @pytest.mark.asyncio
    async def test_errors_are_captured(self):
        def raises_sync():
            raise ValueError("bad input")

        async def raises_async():
            raise RuntimeError("remote failed")

        tasks = [
            ParallelTask(name="sync", func=raises_sync),
            ParallelTask(name="async", func=raises_async),
            ParallelTask(name="ok", func=lambda: 1),
        ]
        results = {r.name: r for r in await run_tasks_in_parallel(tasks)}

        assert results["sync"].success is False
        assert results["sync"].error == "bad input"
        assert results["async"].error == "remote failed"
        assert results["ok"].success is True
        assert results["ok"].to_dict() == {"name": "ok", "success": True, "duration": results["ok"].duration, "result": 1}

    @pytest.mark.asyncio
    async def test_cancelled_task_does_not_crash_batch(self):
        async def cancelled_upstream():
            raise asyncio.CancelledError()

        async def slow_ok():
            await asyncio.sleep(0.05)
            return "ok"

        tasks = [
            ParallelTask(name="upload", func=cancelled_upstream),
            ParallelTask(name="lint", func=slow_ok),
        ]
        results = {r.name: r for r in await run_tasks_in_parallel(tasks, max_concurrent=2)}

        assert results["upload"].success is False
        assert results["upload"].error == "Task upload was cancelled"
        assert results["upload"].timed_out is False
        assert results["lint"].success is True
        assert results["lint"].result == "ok"

    @pytest.mark.asyncio
    async def test_cancelling_batch_cancels_running_tasks(self):
        started = asyncio.Event()
        cancelled = []

        async def long_running():
            started.set()
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.append(True)
                raise

        batch = asyncio.ensure_future(
            run_tasks_in_parallel([ParallelTask(name="deploy", func=long_running)], timeout=None)
        )
        await started.wait()
        batch.cancel()

        with pytest.raises(asyncio.CancelledError):
            await batch
        await asyncio.sleep(0.01)
        assert cancelled == [True]

    @pytest.mark.asyncio
    async def test_progress_callback(self):
        progress = Mock()
        tasks = [ParallelTask(name=str(i), func=lambda: None) for i in range(3)]

        await run_tasks_in_parallel(tasks, on_progress=progress)

        assert [c.args for c in progress.call_args_list] == [(1, 3), (2, 3), (3, 3)]

    @pytest.mark.asyncio
    async def test_progress_callback_errors_are_ignored(self, caplog):
        tasks = [ParallelTask(name="a", func=lambda: 1)]
        results = await run_tasks_in_parallel(tasks, on_progress=Mock(side_effect=RuntimeError("ui gone")))
        assert results[0].success is True
        assert any("Progress callback error" in r.message for r in caplog.records)

    @pytest.mark.asyncio
    async def test_invalid_concurrency(self):
        with pytest.raises(ValueError):
            await run_tasks_in_parallel([ParallelTask(name="a", func=lambda: 1)], max_concurrent=0)


class TestConcurrencyCap:
    """Tests for bounded concurrency."""

    @pytest.mark.asyncio
    async def test_at_most_n_tasks_run_at_once(self):
        tracker = ConcurrencyTracker()
        tasks = [ParallelTask(name=f"t{i}", func=tracker.work, args=(i,)) for i in range(7)]

        batch = asyncio.create_task(run_tasks_in_parallel(tasks, max_concurrent=3))
        for _ in range(5):
            await asyncio.sleep(0)
        assert tracker.running == 3

        tracker.release.set()
        results = await batch

        assert tracker.peak == 3
        assert len(results) == 7
        assert all(r.success for r in results)

    @pytest.mark.asyncio
    async def test_admission_follows_queue_order(self):
        started = []

        async def record(name):
            started.append(name)
            await asyncio.sleep(0)

        tasks = [ParallelTask(name=n, func=record, args=(n,)) for n in "abcdef"]
        await run_tasks_in_parallel(tasks, max_concurrent=1)

        assert started == list("abcdef")


class TestTimeouts:
    """Tests for per-task and global timeouts."""

    @pytest.mark.asyncio
    async def test_task_timeout_is_isolated(self):
        async def slow():
            await asyncio.sleep(10)

        async def fast():
            await asyncio.sleep(0.01)
            return "fast"

        tasks = [ParallelTask(name="slow", func=slow), ParallelTask(name="fast", func=fast)]
        results = {r.name: r for r in await run_tasks_in_parallel(tasks, task_timeout=0.05)}

        assert results["slow"].success is False
        assert results["slow"].timed_out is True
        assert "timed out" in results["slow"].error
        assert results["fast"].success is True
        assert results["fast"].result == "fast"

    @pytest.mark.asyncio
    async def test_global_timeout_reports_partial_results(self):
        async def quick():
            return "quick"

        async def hang():
            await asyncio.sleep(10)

        tasks = [
            ParallelTask(name="quick", func=quick),
            ParallelTask(name="hang", func=hang),
            ParallelTask(name="queued", func=quick),
        ]

        with pytest.raises(ParallelTimeoutError) as exc_info:
            await run_tasks_in_parallel(tasks, max_concurrent=2, timeout=0.05, task_timeout=None)

        results = {r.name: r for r in exc_info.value.results}
        assert results["quick"].success is True
        assert results["queued"].success is True
        assert results["hang"].success is False
        assert results["hang"].timed_out is True

    @pytest.mark.asyncio
    async def test_global_timeout_marks_unstarted_tasks(self):
        async def hang():
            await asyncio.sleep(10)

        tasks = [ParallelTask(name=f"h{i}", func=hang) for i in range(3)]

        with pytest.raises(ParallelTimeoutError) as exc_info:
            await run_tasks_in_parallel(tasks, max_concurrent=1, timeout=0.05, task_timeout=None)

        results = exc_info.value.results
        assert len(results) == 3
        assert all(r.timed_out and not r.success for r in results)
        assert "not started" in {r.name: r for r in results}["h2"].error


class TestFailFast:
    """Tests for fail_fast admission control."""

    @pytest.mark.asyncio
    async def test_queue_stops_after_failure_but_in_flight_drains(self):
        release = asyncio.Event()

        async def fail():
            raise RuntimeError("lint failed")

        async def wait_then_succeed():
            await release.wait()
            return "drained"

        async def never_admitted():
            raise AssertionError("should not run")

        tasks = [
            ParallelTask(name="fail", func=fail),
            ParallelTask(name="slow", func=wait_then_succeed),
            ParallelTask(name="later", func=never_admitted),
        ]

        batch = asyncio.create_task(run_tasks_in_parallel(tasks, max_concurrent=2, fail_fast=True))
        for _ in range(5):
            await asyncio.sleep(0)
        release.set()
        results = {r.name: r for r in await batch}

        assert set(results) == {"fail", "slow"}
        assert results["slow"].result == "drained"
        assert results["fail"].success is False

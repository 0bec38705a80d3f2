"""Tests for UploadQueue lanes, pause/resume requeue and cancellation.

Uses a scripted runner instead of the real state machine so the queue's
ordering and outcome rules are tested in isolation.
"""

from __future__ import annotations

import asyncio

import pytest

from mpupload.models import JobOutcome
from mpupload.upload.cancel import CancelScope
from mpupload.upload.exceptions import StorageError, UploadError
from mpupload.upload.queue import QueuedJob, QueueState, UploadQueue


class ScriptedRunner:
    """Runner that records run order; ``hold`` paths block until cancelled or released."""

    def __init__(self) -> None:
        self.order: list[str] = []
        self.hold: set[str] = set()
        self.fail: set[str] = set()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def __call__(self, job: QueuedJob, scope: CancelScope) -> None:
        self.order.append(job.file_path)
        if job.file_path in self.fail:
            raise StorageError(f"{job.file_path} rejected")
        if job.file_path in self.hold:
            self.started.set()
            await scope.run(self.release.wait())


@pytest.fixture
def runner() -> ScriptedRunner:
    return ScriptedRunner()


# ======================================================================
# Ordering and outcomes
# ======================================================================


class TestQueueOrdering:
    @pytest.mark.asyncio
    async def test_jobs_run_one_at_a_time_fifo(self, runner):
        queue = UploadQueue(runner)
        jobs = [queue.enqueue("u", p) for p in ("a", "b", "c")]

        await queue.join()

        assert runner.order == ["a", "b", "c"]
        assert [j.future.result() for j in jobs] == [JobOutcome.COMPLETED] * 3

    @pytest.mark.asyncio
    async def test_failure_only_affects_that_job(self, runner):
        runner.fail = {"b"}
        finished: list[tuple[str, JobOutcome]] = []
        queue = UploadQueue(runner, on_finished=lambda j, o: finished.append((j.file_path, o)))
        jobs = [queue.enqueue("u", p) for p in ("a", "b", "c")]

        await queue.join()

        assert finished == [
            ("a", JobOutcome.COMPLETED),
            ("b", JobOutcome.FAILED),
            ("c", JobOutcome.COMPLETED),
        ]
        assert isinstance(jobs[1].error, StorageError)

    @pytest.mark.asyncio
    async def test_enqueue_while_idle_restarts_pump(self, runner):
        queue = UploadQueue(runner)
        queue.enqueue("u", "a")
        await queue.join()

        job = queue.enqueue("u", "b")
        assert await job.future == JobOutcome.COMPLETED
        assert runner.order == ["a", "b"]

    @pytest.mark.asyncio
    async def test_callback_error_does_not_stop_queue(self, runner):
        def _boom(job, outcome):
            raise RuntimeError("listener bug")

        queue = UploadQueue(runner, on_finished=_boom)
        jobs = [queue.enqueue("u", p) for p in ("a", "b")]

        await queue.join()

        assert runner.order == ["a", "b"]
        assert jobs[1].future.result() == JobOutcome.COMPLETED


# ======================================================================
# Pause / resume
# ======================================================================


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_pause_requeues_in_flight_job_at_front(self, runner):
        runner.hold = {"a"}
        requeued: list[str] = []
        queue = UploadQueue(runner, on_requeued=lambda j: requeued.append(j.file_path))
        job_a = queue.enqueue("u", "a")
        queue.enqueue("u", "b")
        await runner.started.wait()

        queue.pause()
        await queue.join()

        assert queue.state == QueueState.PAUSED
        assert requeued == ["a"]
        assert [j.file_path for j in queue.pending()] == ["a", "b"]
        assert not job_a.future.done()

        queue.enqueue("u", "c")
        assert [j.file_path for j in queue.pending()] == ["a", "b", "c"]

        runner.hold.clear()
        queue.resume()
        await queue.join()

        assert runner.order == ["a", "a", "b", "c"]
        assert job_a.future.result() == JobOutcome.COMPLETED
        assert job_a.attempts == 2

    @pytest.mark.asyncio
    async def test_enqueue_while_paused_waits_for_resume(self, runner):
        queue = UploadQueue(runner)
        queue.pause()
        job = queue.enqueue("u", "a")

        await queue.join()
        assert runner.order == []

        queue.resume()
        assert await job.future == JobOutcome.COMPLETED

    @pytest.mark.asyncio
    async def test_pause_resume_are_idempotent(self, runner):
        queue = UploadQueue(runner)
        queue.resume()
        queue.pause()
        queue.pause()
        assert queue.is_paused
        queue.resume()
        queue.resume()
        assert queue.state == QueueState.RUNNING


# ======================================================================
# Cancellation and close
# ======================================================================


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_all_drops_everything(self, runner):
        runner.hold = {"a"}
        queue = UploadQueue(runner)
        jobs = [queue.enqueue("u", p) for p in ("a", "b", "c")]
        await runner.started.wait()

        queue.cancel_all()
        await queue.join()

        assert [j.future.result() for j in jobs] == [JobOutcome.CANCELED] * 3
        assert runner.order == ["a"]
        assert queue.pending() == []

    @pytest.mark.asyncio
    async def test_cancel_all_while_paused_drops_requeued_job(self, runner):
        runner.hold = {"a"}
        queue = UploadQueue(runner)
        job = queue.enqueue("u", "a")
        await runner.started.wait()
        queue.pause()
        await queue.join()

        queue.cancel_all()

        assert job.future.result() == JobOutcome.CANCELED
        assert queue.pending() == []

    @pytest.mark.asyncio
    async def test_closed_queue_refuses_work(self, runner):
        queue = UploadQueue(runner)
        await queue.close()

        assert queue.state == QueueState.STOPPED
        with pytest.raises(UploadError):
            queue.enqueue("u", "a")

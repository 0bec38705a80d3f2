"""Single-concurrency upload queue with pause, resume and priority requeue.

Jobs run strictly one at a time.  Two lanes feed the pump:

* **front** -- jobs interrupted by :meth:`UploadQueue.pause`; served first
* **tail**  -- newly enqueued work, FIFO

Pausing cancels the in-flight job's scope and puts that job back on the
front lane, so ``pause(); resume()`` continues with the interrupted file
before anything queued after it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum

from mpupload.models import JobOutcome, path_key
from mpupload.upload.cancel import CancelScope
from mpupload.upload.exceptions import UploadCancelled, UploadError

logger = logging.getLogger(__name__)


class QueueState(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass(eq=False)
class QueuedJob:
    """One admitted file and the future its caller awaits."""

    user_id: str
    file_path: str
    future: asyncio.Future[JobOutcome]
    error: BaseException | None = None
    pause_interrupted: bool = False
    canceled: bool = False
    attempts: int = 0

    @property
    def key(self) -> str:
        return path_key(self.file_path)


JobRunner = Callable[[QueuedJob, CancelScope], Awaitable[None]]
FinishCallback = Callable[[QueuedJob, JobOutcome], None]
RequeueCallback = Callable[[QueuedJob], None]


class UploadQueue:
    """Runs queued jobs one at a time through *runner*.

    Usage::

        queue = UploadQueue(runner, on_finished=handle_outcome)
        job = queue.enqueue("c001", "/data/a.bin")
        outcome = await job.future

    Args:
        runner: Coroutine function executing one job under a cancel scope.
            Raising :class:`UploadCancelled` means interrupted, any other
            exception means failed.
        on_finished: Called once per job with its terminal outcome.
        on_requeued: Called when a pause puts a job back on the front lane.
    """

    def __init__(
        self,
        runner: JobRunner,
        on_finished: FinishCallback | None = None,
        on_requeued: RequeueCallback | None = None,
    ) -> None:
        self._runner = runner
        self._on_finished = on_finished
        self._on_requeued = on_requeued

        self._front: deque[QueuedJob] = deque()
        self._tail: deque[QueuedJob] = deque()
        self._state = QueueState.RUNNING
        self._current: QueuedJob | None = None
        self._scope: CancelScope | None = None
        self._pump: asyncio.Task[None] | None = None
        self._idle = asyncio.Event()
        self._idle.set()

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> QueueState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._state == QueueState.PAUSED

    @property
    def current(self) -> QueuedJob | None:
        return self._current

    def pending(self) -> list[QueuedJob]:
        """Jobs waiting to run, in the order they will run."""
        return list(self._front) + list(self._tail)

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def enqueue(self, user_id: str, file_path: str) -> QueuedJob:
        """Append a job to the tail lane and start the pump if idle.

        Raises:
            UploadError: If the queue has been closed.
        """
        if self._state == QueueState.STOPPED:
            raise UploadError("Upload queue is closed")
        future: asyncio.Future[JobOutcome] = asyncio.get_running_loop().create_future()
        job = QueuedJob(user_id=user_id, file_path=file_path, future=future)
        self._tail.append(job)
        logger.debug("Queued %s (%d waiting)", file_path, len(self._front) + len(self._tail))
        self._kick()
        return job

    def pause(self) -> None:
        """Stop taking new jobs and interrupt the in-flight one.

        The interrupted job goes to the front lane once its run unwinds.
        """
        if self._state != QueueState.RUNNING:
            return
        self._state = QueueState.PAUSED
        if self._current is not None and self._scope is not None:
            self._current.pause_interrupted = True
            self._scope.cancel("paused")
        logger.info("Upload queue paused")

    def resume(self) -> None:
        if self._state != QueueState.PAUSED:
            return
        self._state = QueueState.RUNNING
        logger.info("Upload queue resumed")
        self._kick()

    def cancel_all(self) -> None:
        """Drop every waiting job and cancel the in-flight one."""
        drained = self.pending()
        self._front.clear()
        self._tail.clear()
        for job in drained:
            job.canceled = True
            self._finish(job, JobOutcome.CANCELED)
        if self._current is not None and self._scope is not None:
            self._current.canceled = True
            self._scope.cancel("canceled")
        if drained:
            logger.info("Canceled %d queued uploads", len(drained))

    async def join(self) -> None:
        """Wait until the pump is idle (queue drained, or paused with nothing in flight)."""
        await self._idle.wait()

    async def close(self) -> None:
        """Cancel everything and refuse further work."""
        self._state = QueueState.STOPPED
        self.cancel_all()
        if self._pump is not None:
            await asyncio.gather(self._pump, return_exceptions=True)

    # ------------------------------------------------------------------
    # Pump
    # ------------------------------------------------------------------

    def _kick(self) -> None:
        if self._state != QueueState.RUNNING:
            return
        if self._pump is not None and not self._pump.done():
            return
        if not self._front and not self._tail:
            return
        self._idle.clear()
        self._pump = asyncio.get_running_loop().create_task(self._run_pump())

    def _next(self) -> QueuedJob | None:
        if self._front:
            return self._front.popleft()
        if self._tail:
            return self._tail.popleft()
        return None

    async def _run_pump(self) -> None:
        try:
            while self._state == QueueState.RUNNING:
                job = self._next()
                if job is None:
                    break
                await self._process(job)
        finally:
            self._pump = None
            self._idle.set()

    async def _process(self, job: QueuedJob) -> None:
        scope = CancelScope()
        job.pause_interrupted = False
        job.attempts += 1
        self._current = job
        self._scope = scope
        try:
            await self._runner(job, scope)
        except UploadCancelled:
            if job.pause_interrupted and not job.canceled:
                self._front.appendleft(job)
                logger.info("Requeued %s at the front after pause", job.file_path)
                if self._on_requeued is not None:
                    self._notify(self._on_requeued, job)
            else:
                self._finish(job, JobOutcome.CANCELED)
        except Exception as exc:
            job.error = exc
            self._finish(job, JobOutcome.FAILED)
        else:
            self._finish(job, JobOutcome.COMPLETED)
        finally:
            self._current = None
            self._scope = None

    def _finish(self, job: QueuedJob, outcome: JobOutcome) -> None:
        if not job.future.done():
            job.future.set_result(outcome)
        if self._on_finished is not None:
            self._notify(self._on_finished, job, outcome)

    @staticmethod
    def _notify(callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception:
            logger.exception("Queue callback %r raised", callback)

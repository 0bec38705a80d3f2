"""Queued upload orchestrator: the engine's public facade.

Composes the upload primitives (session coordinator, per-file state
machine, single-concurrency queue) into one object that:

* Admits each local path at most once while it is queued or running
* Runs admitted files strictly one at a time, FIFO
* Reports lifecycle events to an :class:`UploadListener`
* Pauses/resumes the remote session alongside the queue (in the background)
* Completes a user's remote session exactly once, when every file admitted
  for it has completed
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any

from mpupload.models import JobOutcome, SessionStatus, path_key
from mpupload.upload.cancel import CancelScope
from mpupload.upload.engine import FileUploadStateMachine
from mpupload.upload.queue import QueuedJob, UploadQueue
from mpupload.upload.session import SessionCoordinator

logger = logging.getLogger(__name__)


class UploadListener:
    """Observer for upload lifecycle events.

    Every method is a no-op; subclass and override what you need.  Calls
    arrive on the event loop thread and must not block.
    """

    def on_queued(self, file_path: str) -> None:
        pass

    def on_started(self, file_path: str) -> None:
        pass

    def on_progress(self, file_path: str, percent: int) -> None:
        pass

    def on_paused(self, file_path: str) -> None:
        pass

    def on_completed(self, file_path: str) -> None:
        pass

    def on_failed(self, file_path: str, error: BaseException | None) -> None:
        pass

    def on_canceled(self, file_path: str) -> None:
        pass


class QueuedUploadOrchestrator:
    """Binds an :class:`UploadQueue` to a :class:`FileUploadStateMachine`.

    Usage::

        orchestrator = QueuedUploadOrchestrator(machine, sessions, listener)
        future = orchestrator.enqueue_file("c001", "/data/a.bin")
        await orchestrator.join()
        assert future.result() is JobOutcome.COMPLETED

    Args:
        machine: Per-file state machine that performs the upload.
        sessions: Coordinator for the users' remote sessions.
        listener: Optional event observer (omit for headless mode).
    """

    def __init__(
        self,
        machine: FileUploadStateMachine,
        sessions: SessionCoordinator,
        listener: UploadListener | None = None,
    ) -> None:
        self._machine = machine
        self._sessions = sessions
        self._listener = listener or UploadListener()
        self._queue = UploadQueue(
            self._run_job,
            on_finished=self._job_finished,
            on_requeued=self._job_requeued,
        )

        # path key -> job, while queued or running
        self._admitted: dict[str, QueuedJob] = {}
        # user id -> {path key: outcome or None while unfinished}
        self._batches: dict[str, dict[str, JobOutcome | None]] = {}

        self._completion_lock = asyncio.Lock()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def queue(self) -> UploadQueue:
        return self._queue

    # ------------------------------------------------------------------
    # Control operations
    # ------------------------------------------------------------------

    def enqueue_file(self, user_id: str, file_path: str) -> asyncio.Future[JobOutcome]:
        """Admit *file_path* for upload on behalf of *user_id*.

        Returns:
            A future resolving to the job's :class:`JobOutcome`.  Enqueuing
            a path that is already queued or running returns its existing
            future.
        """
        key = path_key(file_path)
        existing = self._admitted.get(key)
        if existing is not None:
            logger.debug("%s is already admitted; not queuing again", file_path)
            return existing.future

        job = self._queue.enqueue(user_id, file_path)
        self._admitted[key] = job
        self._batches.setdefault(user_id, {})[key] = None
        self._listener.on_queued(file_path)
        return job.future

    def pause_all(self) -> None:
        """Pause the queue (requeueing the in-flight file) and the remote sessions."""
        self._queue.pause()
        for session_id in self._active_session_ids():
            self._spawn(self._sessions.pause(session_id), f"pause session {session_id}")

    def resume_all(self) -> None:
        self._queue.resume()
        for session_id in self._active_session_ids():
            self._spawn(self._sessions.resume(session_id), f"resume session {session_id}")

    def cancel_all(self) -> None:
        self._queue.cancel_all()

    async def join(self) -> None:
        """Wait for the queue to go idle and for background session calls."""
        await self._queue.join()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def close(self) -> None:
        await self._queue.close()
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ------------------------------------------------------------------
    # Queue callbacks
    # ------------------------------------------------------------------

    async def _run_job(self, job: QueuedJob, scope: CancelScope) -> None:
        self._listener.on_started(job.file_path)
        session_id = await scope.run(self._sessions.start_or_reuse_session(job.user_id))
        await self._machine.run(
            job.file_path,
            session_id,
            scope=scope,
            on_progress=self._listener.on_progress,
        )

    def _job_requeued(self, job: QueuedJob) -> None:
        self._listener.on_paused(job.file_path)

    def _job_finished(self, job: QueuedJob, outcome: JobOutcome) -> None:
        key = job.key
        if self._admitted.get(key) is job:
            del self._admitted[key]

        batch = self._batches.get(job.user_id)
        if batch is not None and key in batch:
            batch[key] = outcome

        if outcome == JobOutcome.COMPLETED:
            self._listener.on_completed(job.file_path)
        elif outcome == JobOutcome.FAILED:
            self._listener.on_failed(job.file_path, job.error)
        else:
            self._listener.on_canceled(job.file_path)

        if batch and all(o == JobOutcome.COMPLETED for o in batch.values()):
            session = self._sessions.active_session(job.user_id)
            if session is not None:
                self._spawn(
                    self._complete_session(job.user_id, session.session_id),
                    f"complete session {session.session_id}",
                )

    # ------------------------------------------------------------------
    # Session handling
    # ------------------------------------------------------------------

    async def _complete_session(self, user_id: str, session_id: str) -> None:
        async with self._completion_lock:
            session = self._sessions.get(session_id)
            if session is None or session.status == SessionStatus.COMPLETED:
                return
            batch = self._batches.get(user_id, {})
            if not batch or not all(o == JobOutcome.COMPLETED for o in batch.values()):
                # more files were admitted while this call was waiting
                return
            await self._sessions.complete(session_id)
            self._batches.pop(user_id, None)

    def _active_session_ids(self) -> list[str]:
        ids = []
        for user_id in self._batches:
            session = self._sessions.active_session(user_id)
            if session is not None:
                ids.append(session.session_id)
        return ids

    def _spawn(self, coro: Awaitable[Any], what: str) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)

        def _done(t: asyncio.Task[Any]) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error("Background %s failed: %s", what, exc)

        task.add_done_callback(_done)

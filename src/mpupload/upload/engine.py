"""Per-file multipart upload state machine.

Drives one local file through the remote multipart protocol:

  1. **prepare**   -- register the file (once) and persist fileId/uploadId
  2. **reconcile** -- adopt the service's list of stored parts as truth
  3. **upload**    -- for each missing part: read, presign, PUT, persist
  4. **finalize**  -- complete the file with the merged, sorted part list

Progress is credited only after object storage acknowledges a part, and
persisted right after that, so a crash or cancellation at any point leaves
a job that resumes exactly where the acknowledged parts end.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Callable
from typing import BinaryIO

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from mpupload.constants import DEFAULT_CHUNK_BYTES
from mpupload.models import (
    FileUploadJob,
    JobStatus,
    PartRecord,
    ResumeEntry,
    normalize_etag,
    path_key,
)
from mpupload.upload.cancel import CancelScope
from mpupload.upload.client import RemoteUploadService
from mpupload.upload.exceptions import (
    CompletionConflictError,
    LocalFileMissingError,
    RemoteNotFoundError,
    UploadCancelled,
    UploadError,
)
from mpupload.upload.fsm import create_job_fsm
from mpupload.upload.planner import PartPlan, plan_parts
from mpupload.upload.state import PathLease, ResumeStateStore
from mpupload.upload.storage import PartUploader

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int], None]


def _read_exact(reader: BinaryIO, offset: int, size: int) -> bytes:
    reader.seek(offset)
    data = reader.read(size)
    if len(data) != size:
        raise UploadError(
            f"Short read at offset {offset}: wanted {size} bytes, got {len(data)} "
            "(file changed during upload?)"
        )
    return data


def _no_progress(file_path: str, percent: int) -> None:
    pass


class FileUploadStateMachine:
    """Uploads single files, resumably, one run at a time per path.

    Usage::

        machine = FileUploadStateMachine(client, storage, store)
        job = await machine.run("/data/video.mp4", session_id)

    Args:
        remote: Remote upload service (register/presign/complete/parts).
        storage: Object-storage uploader for presigned PUTs.
        store: Resume state store; every write goes through a path lease.
        chunk_bytes: Part size for newly registered files.
    """

    def __init__(
        self,
        remote: RemoteUploadService,
        storage: PartUploader,
        store: ResumeStateStore,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    ) -> None:
        if chunk_bytes <= 0:
            raise ValueError(f"chunk_bytes must be positive, got {chunk_bytes}")
        self._remote = remote
        self._storage = storage
        self._store = store
        self._chunk_bytes = chunk_bytes
        self._jobs: dict[str, FileUploadJob] = {}

    @property
    def chunk_bytes(self) -> int:
        return self._chunk_bytes

    def get_job(self, file_path: str) -> FileUploadJob | None:
        """Return the in-memory job for *file_path*, if any run touched it."""
        return self._jobs.get(path_key(file_path))

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        file_path: str,
        session_id: str,
        scope: CancelScope | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> FileUploadJob:
        """Upload (or resume) *file_path* within *session_id*.

        Returns:
            The completed job.

        Raises:
            LocalFileMissingError: If the file does not exist (0% reported).
            UploadCancelled: If *scope* was cancelled; the job is paused.
            CompletionConflictError: If completion failed after one retry.
            UploadError: Any other failure; the job is marked failed.
        """
        scope = scope or CancelScope()
        report = on_progress or _no_progress
        path = os.path.abspath(file_path)

        if not os.path.isfile(path):
            report(path, 0)
            raise LocalFileMissingError(f"File not found: {path}")

        async with self._store.lease(path) as lease:
            job = await self._checkout(path, session_id, lease)
            try:
                await self.prepare(job, lease, scope)
                await self.reconcile(job, lease, scope)
                report(path, job.progress_percent)

                self._transition(
                    job,
                    "resume_upload" if job.status == JobStatus.PAUSED else "begin_upload",
                )
                logger.info(
                    "Uploading %s: %d/%d parts already stored",
                    path,
                    len(job.uploaded_parts),
                    job.total_parts,
                )

                with open(path, "rb") as reader:
                    for part_number in range(1, job.total_parts + 1):
                        scope.raise_if_cancelled()
                        if await self.upload_next_part(job, part_number, reader, lease, scope):
                            report(path, job.progress_percent)

                self._transition(job, "finish_parts")
                await self.finalize(job, lease, scope)
            except UploadCancelled:
                if job.status != JobStatus.PAUSED:
                    self._transition(job, "pause_upload")
                logger.info(
                    "Paused %s at %d/%d parts", path, len(job.uploaded_parts), job.total_parts
                )
                raise
            except Exception as exc:
                self._transition(job, "fail_upload")
                logger.error("Upload of %s failed: %s", path, exc)
                raise

        report(path, 100)
        logger.info("Completed %s (%d parts, %d bytes)", path, job.total_parts, job.sent_bytes)
        return job

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def prepare(self, job: FileUploadJob, lease: PathLease, scope: CancelScope) -> None:
        """Register *job* with the service if it has no fileId yet.

        The registration is persisted before any part is uploaded, so a
        crash right after this point resumes without registering again.
        """
        if job.file_id:
            return
        scope.raise_if_cancelled()
        reg = await scope.run(
            self._remote.register_file(
                job.session_id or "",
                job.file_name,
                job.file_size_bytes,
                job.total_parts,
            )
        )
        job.file_id = reg.file_id
        job.upload_id = reg.upload_id
        self._transition(job, "register_file")
        await lease.upsert(ResumeEntry.from_job(job))
        logger.info(
            "Registered %s as %s (%d parts)", job.file_path, job.file_id, job.total_parts
        )

    async def reconcile(
        self,
        job: FileUploadJob,
        lease: PathLease,
        scope: CancelScope,
        reregister_if_unknown: bool = True,
    ) -> None:
        """Rebuild ``job.uploaded_parts`` from the service's stored parts.

        Locally cached ETags fill in for remote records without one; local
        parts the service does not have are dropped and uploaded again.
        If the service does not know the fileId any more, the registration
        is discarded and the file registered afresh (once).
        """
        try:
            remote = await scope.run(self._remote.get_file_parts(job.file_id or ""))
        except RemoteNotFoundError:
            if not reregister_if_unknown:
                raise
            logger.warning(
                "Service has no record of %s (fileId=%s); registering again",
                job.file_path,
                job.file_id,
            )
            job.file_id = None
            job.upload_id = None
            job.uploaded_parts.clear()
            self._transition(job, "discard_registration")
            await self.prepare(job, lease, scope)
            await self.reconcile(job, lease, scope, reregister_if_unknown=False)
            return

        if remote.upload_id and remote.upload_id != job.upload_id:
            logger.warning(
                "uploadId for %s changed remotely (%s -> %s)",
                job.file_path,
                job.upload_id,
                remote.upload_id,
            )
            job.upload_id = remote.upload_id

        plan = self._plan(job)
        cached = {n: p.etag for n, p in job.uploaded_parts.items()}
        stored = remote.stored_parts()

        job.uploaded_parts.clear()
        for part_number, etag in sorted(stored.items()):
            if not 1 <= part_number <= job.total_parts:
                logger.warning(
                    "Ignoring out-of-range part %d for %s", part_number, job.file_path
                )
                continue
            job.record_part(
                PartRecord(
                    part_number=part_number,
                    etag=etag or cached.get(part_number, ""),
                    size_bytes=plan.part_size_of(part_number),
                )
            )

        dropped = sorted(set(cached) - set(job.uploaded_parts))
        if dropped:
            logger.info(
                "Parts %s of %s are not stored remotely; they will be uploaded again",
                dropped,
                job.file_path,
            )
        await lease.upsert(ResumeEntry.from_job(job))

    async def upload_next_part(
        self,
        job: FileUploadJob,
        part_number: int,
        reader: BinaryIO,
        lease: PathLease,
        scope: CancelScope,
    ) -> bool:
        """Upload one part unless it is already stored.

        Returns:
            ``True`` if a part was sent, ``False`` if it was skipped.
        """
        if part_number in job.uploaded_parts:
            logger.debug("Part %d of %s already stored; skipping", part_number, job.file_path)
            return False

        plan = self._plan(job)
        size = plan.part_size_of(part_number)
        offset = plan.offset_of(part_number)

        with scope.child() as part_scope:
            data = await asyncio.to_thread(_read_exact, reader, offset, size)
            part_scope.raise_if_cancelled()
            url = await part_scope.run(self._remote.presign_part(job.file_id or "", part_number))
            etag = await part_scope.run(self._storage.put_part(url, data))

        job.record_part(
            PartRecord(part_number=part_number, etag=normalize_etag(etag), size_bytes=size)
        )
        await lease.upsert(ResumeEntry.from_job(job))
        logger.debug(
            "Part %d/%d of %s stored (%d bytes)",
            part_number,
            job.total_parts,
            job.file_path,
            size,
        )
        return True

    async def finalize(self, job: FileUploadJob, lease: PathLease, scope: CancelScope) -> None:
        """Complete the remote multipart upload and drop the resume entry.

        Each attempt re-reads the service's part list and merges it with
        the local records, so the single retry runs against freshly
        reconciled state.

        Raises:
            CompletionConflictError: If both attempts fail.
        """
        if not job.all_parts_present:
            raise UploadError(f"Cannot complete {job.file_path}: parts are missing")

        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(2),
                retry=(
                    retry_if_exception_type(Exception)
                    & retry_if_not_exception_type(UploadCancelled)
                ),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    parts = await self._completion_parts(job, scope)
                    await scope.run(
                        self._remote.complete_file(job.file_id or "", job.upload_id or "", parts)
                    )
        except UploadCancelled:
            raise
        except Exception as exc:
            raise CompletionConflictError(
                f"Completing {job.file_path} failed after reconcile and retry: {exc}"
            ) from exc

        self._transition(job, "complete_file")
        await lease.remove()
        self._jobs.pop(job.key, None)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _checkout(
        self,
        path: str,
        session_id: str,
        lease: PathLease,
    ) -> FileUploadJob:
        """Return the job for *path*: in memory, hydrated from the store, or new."""
        key = path_key(path)
        size = os.path.getsize(path)
        plan = plan_parts(size, self._chunk_bytes)

        job = self._jobs.get(key)
        if job is not None:
            if job.file_size_bytes != size or job.status == JobStatus.COMPLETED:
                job = None
            elif job.status in (JobStatus.PAUSED, JobStatus.FAILED) and not job.file_id:
                job = None
            elif job.status == JobStatus.FAILED:
                self._transition(job, "retry_upload")

        if job is None:
            job = await self._hydrate(path, size, lease)

        if job is None:
            job = FileUploadJob(
                file_path=path,
                file_size_bytes=size,
                part_size_bytes=plan.chunk_bytes,
                total_parts=plan.total_parts,
            )
        if not job.session_id:
            job.session_id = session_id

        self._jobs[key] = job
        return job

    async def _hydrate(
        self,
        path: str,
        size: int,
        lease: PathLease,
    ) -> FileUploadJob | None:
        """Rebuild a job from its resume entry, using the registered part size.

        The registration fixed the part boundaries, so a resumed file keeps
        them even when the configured chunk size has changed since.
        """
        entry = await self._store.get(path)
        if entry is None or not entry.file_id:
            return None

        if entry.part_size_bytes <= 0:
            logger.warning(
                "Resume state for %s has no recorded part size; starting over", path
            )
            await lease.remove()
            return None

        plan = plan_parts(size, entry.part_size_bytes)
        if entry.part_size_bytes != self._chunk_bytes:
            logger.info(
                "Resuming %s with its registered part size %d (configured %d)",
                path,
                entry.part_size_bytes,
                self._chunk_bytes,
            )

        if entry.total_parts != plan.total_parts or entry.file_size_bytes not in (0, size):
            logger.warning(
                "%s changed since it was registered (%d parts -> %d); starting over",
                path,
                entry.total_parts,
                plan.total_parts,
            )
            await lease.remove()
            return None

        job = FileUploadJob(
            file_path=path,
            file_size_bytes=size,
            part_size_bytes=plan.chunk_bytes,
            total_parts=plan.total_parts,
            file_id=entry.file_id,
            upload_id=entry.upload_id,
            session_id=entry.session_id,
            status=JobStatus.REGISTERED,
        )
        for part_number, etag in entry.parts:
            if 1 <= part_number <= plan.total_parts:
                job.record_part(
                    PartRecord(part_number, etag, plan.part_size_of(part_number))
                )
        logger.info(
            "Resuming %s from saved state (fileId=%s, %d/%d parts cached)",
            path,
            job.file_id,
            len(job.uploaded_parts),
            job.total_parts,
        )
        return job

    async def _completion_parts(
        self, job: FileUploadJob, scope: CancelScope
    ) -> list[PartRecord]:
        """Merge remote and local part records, preferring non-empty ETags."""
        remote = await scope.run(self._remote.get_file_parts(job.file_id or ""))
        merged = dict(remote.stored_parts())
        for part_number, part in job.uploaded_parts.items():
            if part.etag or part_number not in merged:
                merged[part_number] = part.etag

        missing = [n for n in range(1, job.total_parts + 1) if n not in merged]
        if missing:
            raise UploadError(f"Cannot complete {job.file_path}: parts {missing} not stored")

        plan = self._plan(job)
        return [
            PartRecord(n, merged[n], plan.part_size_of(n))
            for n in sorted(merged)
            if 1 <= n <= job.total_parts
        ]

    @staticmethod
    def _plan(job: FileUploadJob) -> PartPlan:
        return plan_parts(job.file_size_bytes, job.part_size_bytes)

    @staticmethod
    def _transition(job: FileUploadJob, event: str) -> None:
        """Apply *event* to *job.status*, raising if the FSM forbids it."""
        fsm = create_job_fsm(job.status.value)
        fsm.send(event)
        job.status = JobStatus(fsm.current_state_value)

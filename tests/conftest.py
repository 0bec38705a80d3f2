"""Shared pytest fixtures for the multipart upload engine tests.

Provides in-memory fakes of the remote upload service and object storage,
a temporary resume state store, and a helper for writing sized files.
"""

from __future__ import annotations

import asyncio
import itertools
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from mpupload.models import PartRecord, normalize_etag
from mpupload.upload.engine import FileUploadStateMachine
from mpupload.upload.exceptions import RemoteNotFoundError, StorageError, TransientError
from mpupload.upload.schemas import FilePartsResponse, PartETag, RegisterFileResponse
from mpupload.upload.state import ResumeStateStore

MiB = 1024 * 1024


@dataclass
class FakeFile:
    file_id: str
    upload_id: str
    session_id: str
    file_name: str
    file_size: int
    chunk_count: int
    parts: dict[int, str] = field(default_factory=dict)
    completed_with: list[tuple[int, str]] | None = None


class FakeRemoteService:
    """In-memory stand-in for the remote upload service.

    Records every call in ``calls`` as ``(method, *args)`` tuples.
    """

    def __init__(self) -> None:
        self.files: dict[str, FakeFile] = {}
        self.calls: list[tuple] = []
        self.session_events: list[tuple[str, str]] = []
        self.completed_sessions: list[str] = []
        self.fail_complete = 0
        self.hide_etags = False
        self._active_by_user: dict[str, str] = {}
        self._ids = itertools.count(1)

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def forget(self, file_id: str) -> None:
        """Simulate the service losing a file (e.g. an expired upload)."""
        del self.files[file_id]

    async def start_session(self, user_id: str) -> str:
        self.calls.append(("start_session", user_id))
        if user_id not in self._active_by_user:
            self._active_by_user[user_id] = f"sess-{next(self._ids)}"
        return self._active_by_user[user_id]

    async def register_file(
        self, session_id: str, file_name: str, file_size: int, chunk_count: int
    ) -> RegisterFileResponse:
        self.calls.append(("register_file", session_id, file_name, file_size, chunk_count))
        n = next(self._ids)
        f = FakeFile(f"file-{n}", f"upl-{n}", session_id, file_name, file_size, chunk_count)
        self.files[f.file_id] = f
        return RegisterFileResponse(file_id=f.file_id, upload_id=f.upload_id, s3_key=file_name)

    async def presign_part(self, file_id: str, part_number: int) -> str:
        self.calls.append(("presign_part", file_id, part_number))
        if file_id not in self.files:
            raise RemoteNotFoundError(f"unknown file {file_id}", status_code=404)
        return f"https://storage.test/{file_id}/{part_number}?X-Amz-Signature=abc"

    async def complete_file(
        self, file_id: str, upload_id: str, parts: Iterable[PartRecord]
    ) -> None:
        parts = [(p.part_number, p.etag) for p in parts]
        self.calls.append(("complete_file", file_id, upload_id, parts))
        if self.fail_complete > 0:
            self.fail_complete -= 1
            raise TransientError("complete failed", status_code=503)
        self.files[file_id].completed_with = parts

    async def get_file_parts(self, file_id: str) -> FilePartsResponse:
        self.calls.append(("get_file_parts", file_id))
        f = self.files.get(file_id)
        if f is None:
            raise RemoteNotFoundError(f"unknown file {file_id}", status_code=404)
        numbers = sorted(f.parts)
        return FilePartsResponse(
            file_id=f.file_id,
            upload_id=f.upload_id,
            total_chunks=f.chunk_count,
            uploaded_part_numbers=numbers,
            pending_part_numbers=[n for n in range(1, f.chunk_count + 1) if n not in f.parts],
            uploaded_parts=[]
            if self.hide_etags
            else [PartETag(part_number=n, e_tag=f.parts[n]) for n in numbers],
        )

    async def pause_session(self, session_id: str) -> None:
        self.session_events.append(("pause", session_id))

    async def resume_session(self, session_id: str) -> None:
        self.session_events.append(("resume", session_id))

    async def complete_session(self, session_id: str) -> None:
        self.session_events.append(("complete", session_id))
        self.completed_sessions.append(session_id)
        for user, sid in list(self._active_by_user.items()):
            if sid == session_id:
                del self._active_by_user[user]


class FakeStorage:
    """In-memory object storage that writes parts into a FakeRemoteService.

    ``fail_parts`` makes those part numbers fail once each.  ``block_part``
    makes that part number wait on ``gate`` (set ``blocked`` when reached).
    """

    def __init__(self, remote: FakeRemoteService) -> None:
        self.remote = remote
        self.puts: list[tuple[str, int, int]] = []
        self.fail_parts: set[int] = set()
        self.block_part: int | None = None
        self.gate = asyncio.Event()
        self.blocked = asyncio.Event()

    def unblock(self) -> None:
        self.block_part = None
        self.gate.set()

    def put_numbers(self, file_id: str | None = None) -> list[int]:
        return [n for fid, n, _ in self.puts if file_id is None or fid == file_id]

    async def put_part(self, url: str, data: bytes) -> str:
        file_id, part = url.split("?", 1)[0].rsplit("/", 2)[-2:]
        part_number = int(part)
        if self.block_part == part_number:
            self.blocked.set()
            await self.gate.wait()
        if part_number in self.fail_parts:
            self.fail_parts.discard(part_number)
            raise StorageError(f"PUT part {part_number} rejected with status 500")
        etag = f'"etag-{file_id}-{part_number}"'
        self.remote.files[file_id].parts[part_number] = normalize_etag(etag)
        self.puts.append((file_id, part_number, len(data)))
        return normalize_etag(etag)


# ======================================================================
# Fixtures
# ======================================================================


@pytest.fixture
def remote() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture
def storage(remote: FakeRemoteService) -> FakeStorage:
    return FakeStorage(remote)


@pytest.fixture
async def store(tmp_path: Path):
    """A connected resume state store backed by a temp SQLite file."""
    async with ResumeStateStore(str(tmp_path / "state" / "upload_state.db")) as s:
        yield s


@pytest.fixture
def make_file(tmp_path: Path):
    """Write a file of *size* bytes with position-dependent content."""

    def _make(name: str, size: int) -> str:
        path = tmp_path / "files" / name
        path.parent.mkdir(parents=True, exist_ok=True)
        pattern = bytes(range(251))
        data = (pattern * (size // len(pattern) + 1))[:size]
        path.write_bytes(data)
        return str(path)

    return _make


@pytest.fixture
def machine_factory(remote: FakeRemoteService, storage: FakeStorage, store: ResumeStateStore):
    """Build a FileUploadStateMachine over the shared fakes (fresh job registry each call)."""

    def _build(chunk_bytes: int = 5) -> FileUploadStateMachine:
        return FileUploadStateMachine(remote, storage, store, chunk_bytes=chunk_bytes)

    return _build

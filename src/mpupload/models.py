"""Data models and enums for the multipart upload engine."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass, field
from enum import Enum

from mpupload.constants import DEFAULT_CHUNK_BYTES, DEFAULT_STATE_DB


class JobStatus(str, Enum):
    """Lifecycle status of a single file upload job."""

    NEW = "new"
    REGISTERED = "registered"
    UPLOADING = "uploading"
    ALL_PARTS_UPLOADED = "all_parts_uploaded"
    COMPLETED = "completed"
    PAUSED = "paused"
    FAILED = "failed"


class SessionStatus(str, Enum):
    """Status of a remote upload session."""

    CREATED = "created"
    PAUSED = "paused"
    RESUMED = "resumed"
    COMPLETED = "completed"


class JobOutcome(str, Enum):
    """Terminal result of a queued job, as seen by whoever enqueued it."""

    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


def path_key(file_path: str) -> str:
    """Identity key for a local file: absolute path, case-insensitive."""
    return os.path.abspath(file_path).casefold()


def normalize_etag(etag: str | None) -> str:
    """Strip surrounding whitespace and at most one pair of double quotes.

    ``'"abc"'`` becomes ``'abc'``; ``'""abc""'`` becomes ``'"abc"'``.

    Stripping only one pair is preferred over idempotence: the function is
    idempotent for any tag wrapped in at most one pair of quotes, but a
    second call on ``'"abc"'`` strips again.  Object stores never send
    doubly quoted ETags, so this only matters for malformed headers.
    """
    if not etag:
        return ""
    tag = etag.strip()
    if len(tag) >= 2 and tag.startswith('"') and tag.endswith('"'):
        tag = tag[1:-1]
    return tag


@dataclass(frozen=True, slots=True)
class PartRecord:
    """One uploaded part as acknowledged by object storage."""

    part_number: int
    etag: str
    size_bytes: int


@dataclass
class UploadSession:
    """A server-side grouping of files uploaded together for one user."""

    session_id: str
    user_id: str
    status: SessionStatus = SessionStatus.CREATED


@dataclass
class FileUploadJob:
    """Per-file upload state, owned by one state machine run at a time.

    ``sent_bytes`` and ``next_part_number`` are derived from
    ``uploaded_parts`` so they can never drift from the recorded parts.
    """

    file_path: str
    file_size_bytes: int
    part_size_bytes: int
    total_parts: int
    file_id: str | None = None
    upload_id: str | None = None
    session_id: str | None = None
    uploaded_parts: dict[int, PartRecord] = field(default_factory=dict)
    status: JobStatus = JobStatus.NEW

    @property
    def key(self) -> str:
        return path_key(self.file_path)

    @property
    def file_name(self) -> str:
        return os.path.basename(self.file_path)

    @property
    def sent_bytes(self) -> int:
        return sum(p.size_bytes for p in self.uploaded_parts.values())

    @property
    def next_part_number(self) -> int:
        if not self.uploaded_parts:
            return 1
        return max(self.uploaded_parts) + 1

    @property
    def all_parts_present(self) -> bool:
        return all(n in self.uploaded_parts for n in range(1, self.total_parts + 1))

    @property
    def progress_percent(self) -> int:
        return progress_percent(self.sent_bytes, self.file_size_bytes)

    def record_part(self, part: PartRecord) -> None:
        """Add *part*, replacing any earlier record with the same number."""
        self.uploaded_parts[part.part_number] = part

    def sorted_parts(self) -> list[PartRecord]:
        return [self.uploaded_parts[n] for n in sorted(self.uploaded_parts)]


def progress_percent(sent: int, total: int) -> int:
    """Whole-number percentage clamped to 0..100 (0 when *total* is 0)."""
    if total <= 0:
        return 0
    percent = round(sent * 100.0 / total)
    return max(0, min(100, percent))


@dataclass
class ResumeEntry:
    """Persisted per-file progress used to resume after a restart.

    ``parts`` is a cache of ``(part_number, etag)`` pairs; the remote
    part list is authoritative on resume.  ``part_size_bytes`` is the part
    size the file was registered with (0 for entries written before it
    was recorded).
    """

    file_path: str
    file_id: str
    upload_id: str
    total_parts: int
    uploaded_parts_count: int = 0
    progress_percent: int = 0
    session_id: str | None = None
    file_size_bytes: int = 0
    part_size_bytes: int = 0
    parts: list[tuple[int, str]] = field(default_factory=list)
    updated_at: str | None = None

    @classmethod
    def from_job(cls, job: FileUploadJob) -> ResumeEntry:
        """Snapshot the registration and progress of *job*."""
        return cls(
            file_path=job.file_path,
            file_id=job.file_id or "",
            upload_id=job.upload_id or "",
            total_parts=job.total_parts,
            uploaded_parts_count=len(job.uploaded_parts),
            progress_percent=job.progress_percent,
            session_id=job.session_id,
            file_size_bytes=job.file_size_bytes,
            part_size_bytes=job.part_size_bytes,
            parts=[(p.part_number, p.etag) for p in job.sorted_parts()],
        )

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


@dataclass
class UploadConfig:
    """Configuration for the upload engine and its HTTP collaborators."""

    base_url: str = "http://localhost:8000/api/v1/upload/"
    chunk_bytes: int = DEFAULT_CHUNK_BYTES
    state_db_path: str = DEFAULT_STATE_DB
    user_id: str = "c001"
    request_timeout_seconds: float = 300.0
    connect_timeout_seconds: float = 10.0

    def __post_init__(self) -> None:
        if self.chunk_bytes <= 0:
            raise ValueError(f"chunk_bytes must be positive, got {self.chunk_bytes}")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if not self.base_url.endswith("/"):
            # relative endpoint paths are joined onto the base URL
            self.base_url += "/"

"""Resumable multipart upload client for presigned object storage."""

__version__ = "0.1.0"

from mpupload.models import (
    FileUploadJob,
    JobOutcome,
    JobStatus,
    PartRecord,
    ResumeEntry,
    UploadConfig,
)

__all__ = [
    "FileUploadJob",
    "JobOutcome",
    "JobStatus",
    "PartRecord",
    "ResumeEntry",
    "UploadConfig",
    "__version__",
]

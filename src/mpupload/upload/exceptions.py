"""Exceptions raised by the upload engine."""

from __future__ import annotations


class UploadError(Exception):
    """Base class for upload engine errors."""


class UploadCancelled(UploadError):
    """Raised when a cancel scope aborts an in-flight operation.

    Distinct from failure: the job stays resumable and the queue decides
    whether to requeue it (pause) or drop it (cancel).
    """


class LocalFileMissingError(UploadError, FileNotFoundError):
    """Raised when the local file disappeared before its run started."""


class RemoteServiceError(UploadError):
    """Raised when the remote upload service rejects or fails a request."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientError(RemoteServiceError):
    """Raised on 5xx, 429 or transport errors that may succeed later."""


class PermanentError(RemoteServiceError):
    """Raised on 4xx responses (except 429) that will not succeed as-is."""


class RemoteNotFoundError(PermanentError):
    """Raised when the remote service does not know the requested resource."""


class StorageError(UploadError):
    """Raised when object storage rejects a part or omits its ETag."""


class CompletionConflictError(UploadError):
    """Raised when ``complete_file`` still fails after one reconcile-and-retry."""


class StateOwnershipError(UploadError):
    """Raised when a path's resume entry is written by a non-owner."""

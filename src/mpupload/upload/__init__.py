"""Resumable multipart upload engine.

Public API
----------
.. autoclass:: QueuedUploadOrchestrator
.. autoclass:: UploadListener
.. autoclass:: FileUploadStateMachine
.. autoclass:: UploadQueue
.. autoclass:: SessionCoordinator
.. autoclass:: ResumeStateStore
.. autoclass:: RemoteUploadClient
.. autoclass:: StorageUploader
.. autoclass:: CancelScope
.. autoclass:: UploadProgressTracker
.. autoclass:: RecoveryManager
.. autoclass:: RecoveryResult
"""

from mpupload.upload.cancel import CancelScope
from mpupload.upload.client import RemoteUploadClient, RemoteUploadService
from mpupload.upload.engine import FileUploadStateMachine
from mpupload.upload.exceptions import (
    CompletionConflictError,
    LocalFileMissingError,
    PermanentError,
    RemoteNotFoundError,
    StateOwnershipError,
    StorageError,
    TransientError,
    UploadCancelled,
    UploadError,
)
from mpupload.upload.orchestrator import QueuedUploadOrchestrator, UploadListener
from mpupload.upload.planner import PartPlan, count_parts, plan_parts
from mpupload.upload.progress import UploadProgressTracker
from mpupload.upload.queue import QueuedJob, UploadQueue
from mpupload.upload.recovery import RecoveryManager, RecoveryResult
from mpupload.upload.session import SessionCoordinator
from mpupload.upload.state import PathLease, ResumeStateStore
from mpupload.upload.storage import PartUploader, StorageUploader

__all__ = [
    "CancelScope",
    "CompletionConflictError",
    "FileUploadStateMachine",
    "LocalFileMissingError",
    "PartPlan",
    "PartUploader",
    "PathLease",
    "PermanentError",
    "QueuedJob",
    "QueuedUploadOrchestrator",
    "RecoveryManager",
    "RecoveryResult",
    "RemoteNotFoundError",
    "RemoteUploadClient",
    "RemoteUploadService",
    "ResumeStateStore",
    "SessionCoordinator",
    "StateOwnershipError",
    "StorageError",
    "StorageUploader",
    "TransientError",
    "UploadCancelled",
    "UploadError",
    "UploadListener",
    "UploadProgressTracker",
    "UploadQueue",
    "count_parts",
    "plan_parts",
]

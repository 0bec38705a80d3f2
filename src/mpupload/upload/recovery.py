"""Startup recovery of interrupted uploads.

Reads every persisted resume entry and decides, per file:

1. **Missing local file** -- the entry can never be resumed; it is pruned.
2. **Owned by a live run** -- left alone (the run will finish it).
3. **Resumable** -- admitted to the orchestrator, which reconciles with the
   service's part list and uploads only what is missing.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import dataclass, field

from mpupload.models import JobOutcome
from mpupload.upload.orchestrator import QueuedUploadOrchestrator
from mpupload.upload.state import ResumeStateStore

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------


@dataclass
class RecoveryResult:
    """Summary of a recovery pass.

    Attributes:
        requeued: Paths admitted for resumption.
        pruned: Paths whose entries were deleted because the file is gone.
        skipped: Paths currently owned by an active run.
        errors: Human-readable descriptions of non-fatal errors encountered.
        futures: Outcome futures of the requeued paths.
    """

    requeued: list[str] = field(default_factory=list)
    pruned: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    futures: dict[str, asyncio.Future[JobOutcome]] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Recovery manager
# ---------------------------------------------------------------------------


class RecoveryManager:
    """Requeues persisted uploads after a restart.

    Intended to be called once at startup, before new files are admitted.

    Args:
        store: Resume state store holding the persisted entries.
        orchestrator: Orchestrator the resumable files are admitted to.
        user_id: User the recovered uploads are attributed to.
    """

    def __init__(
        self,
        store: ResumeStateStore,
        orchestrator: QueuedUploadOrchestrator,
        user_id: str,
    ) -> None:
        self._store = store
        self._orchestrator = orchestrator
        self._user_id = user_id

    async def run(self) -> RecoveryResult:
        result = RecoveryResult()
        entries = await self._store.load()
        if not entries:
            logger.debug("No persisted uploads to recover")
            return result

        logger.info("Found %d persisted uploads", len(entries))

        for file_path, entry in entries.items():
            if self._store.is_leased(file_path):
                result.skipped.append(file_path)
                continue

            if not os.path.isfile(file_path):
                logger.warning(
                    "Dropping resume state for %s: file no longer exists", file_path
                )
                if await self._store.remove(file_path):
                    result.pruned.append(file_path)
                else:
                    result.errors.append(f"Could not remove resume state for {file_path}")
                continue

            try:
                future = self._orchestrator.enqueue_file(self._user_id, file_path)
            except Exception as exc:
                msg = f"Error requeueing {file_path}: {exc}"
                logger.error(msg)
                result.errors.append(msg)
                continue

            result.requeued.append(file_path)
            result.futures[file_path] = future
            logger.info(
                "Requeued %s (%d/%d parts, %d%%)",
                file_path,
                entry.uploaded_parts_count,
                entry.total_parts,
                entry.progress_percent,
            )

        logger.info(
            "Recovery complete: %d requeued, %d pruned, %d skipped, %d errors",
            len(result.requeued),
            len(result.pruned),
            len(result.skipped),
            len(result.errors),
        )
        return result

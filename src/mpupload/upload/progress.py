"""Rich progress display for queued uploads.

Two tiers:

* **Overall** -- files finished out of files admitted
* **Per file** -- percent of the file's bytes acknowledged by storage
"""

from __future__ import annotations

import os

from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)

from mpupload.models import path_key
from mpupload.upload.orchestrator import UploadListener


class UploadProgressTracker(UploadListener):
    """Rich progress tracker driven by orchestrator events.

    Usage::

        tracker = UploadProgressTracker()
        orchestrator = QueuedUploadOrchestrator(machine, sessions, tracker)
        with tracker:
            orchestrator.enqueue_file("c001", "/data/a.bin")
            await orchestrator.join()
    """

    def __init__(self, progress: Progress | None = None) -> None:
        self._progress = progress or Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            TimeElapsedColumn(),
            TextColumn("{task.fields[status]}", style="dim"),
        )
        self._overall: TaskID | None = None
        self._files: dict[str, TaskID] = {}

        self._stats: dict[str, int] = {
            "queued": 0,
            "completed": 0,
            "failed": 0,
            "canceled": 0,
            "paused": 0,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._progress.start()
        self._overall = self._progress.add_task(
            "[green]Uploads", total=self._stats["queued"] or None, status="starting..."
        )

    def stop(self) -> None:
        self._progress.stop()

    def __enter__(self) -> UploadProgressTracker:
        self.start()
        return self

    def __exit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        self.stop()

    # ------------------------------------------------------------------
    # Listener events
    # ------------------------------------------------------------------

    def on_queued(self, file_path: str) -> None:
        self._stats["queued"] += 1
        self._files[path_key(file_path)] = self._progress.add_task(
            _display_name(file_path), total=100, status="queued"
        )
        if self._overall is not None:
            self._progress.update(self._overall, total=self._stats["queued"])

    def on_started(self, file_path: str) -> None:
        self._update_file(file_path, status="uploading")
        self._update_overall(_display_name(file_path))

    def on_progress(self, file_path: str, percent: int) -> None:
        self._update_file(file_path, completed=percent)

    def on_paused(self, file_path: str) -> None:
        self._stats["paused"] += 1
        self._update_file(file_path, status="[yellow]paused[/yellow]")

    def on_completed(self, file_path: str) -> None:
        self._stats["completed"] += 1
        self._update_file(file_path, completed=100, status="[green]done[/green]")
        self._finish_one(file_path)

    def on_failed(self, file_path: str, error: BaseException | None) -> None:
        self._stats["failed"] += 1
        self._update_file(file_path, status=f"[red]FAIL[/red] {error or ''}".rstrip())
        self._finish_one(file_path)

    def on_canceled(self, file_path: str) -> None:
        self._stats["canceled"] += 1
        self._update_file(file_path, status="[dim]canceled[/dim]")
        self._finish_one(file_path)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict[str, int]:
        """Return a copy of the current statistics."""
        return dict(self._stats)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _update_file(self, file_path: str, **kwargs: object) -> None:
        task = self._files.get(path_key(file_path))
        if task is not None:
            self._progress.update(task, **kwargs)

    def _update_overall(self, status: str) -> None:
        if self._overall is not None:
            self._progress.update(self._overall, status=status)

    def _finish_one(self, file_path: str) -> None:
        if self._overall is not None:
            self._progress.advance(self._overall, 1)
        self._update_overall(_display_name(file_path))


def _display_name(file_path: str, max_len: int = 40) -> str:
    """Shorten a path for display, keeping the end of the file name."""
    name = os.path.basename(file_path) or file_path
    if len(name) <= max_len:
        return name
    return "..." + name[-(max_len - 3) :]

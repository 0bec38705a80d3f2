"""CLI entry point for the resumable multipart uploader.

Provides commands:
  - upload: Upload files, resumably, with a progress display
  - resume: Finish every upload left unfinished by an earlier run
  - status: Show persisted resume state
  - forget: Drop the persisted resume state of one file
  - session: Pause, resume, complete or inspect a remote upload session
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from mpupload.config import load_upload_config
from mpupload.models import JobOutcome, UploadConfig
from mpupload.upload.client import RemoteUploadClient
from mpupload.upload.engine import FileUploadStateMachine
from mpupload.upload.exceptions import UploadError
from mpupload.upload.orchestrator import QueuedUploadOrchestrator
from mpupload.upload.progress import UploadProgressTracker
from mpupload.upload.recovery import RecoveryManager
from mpupload.upload.session import SessionCoordinator
from mpupload.upload.state import ResumeStateStore
from mpupload.upload.storage import StorageUploader

logger = logging.getLogger(__name__)

app = typer.Typer(
    help="mpupload - resumable multipart uploads to presigned object storage",
    rich_markup_mode="rich",
)
session_app = typer.Typer(help="Control remote upload sessions (pause, resume, complete, status)")
app.add_typer(session_app, name="session")
console = Console()


def setup_logging(verbose: bool = False, log_file: Path | None = None) -> None:
    """Route log records to a Rich console handler and, optionally, a file."""
    level = logging.DEBUG if verbose else logging.INFO
    handlers: list[logging.Handler] = [
        RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=True)
    ]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
        )
        handlers.append(file_handler)
    logging.basicConfig(level=level, format="%(message)s", handlers=handlers, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)


@app.callback()
def app_callback(
    ctx: typer.Context,
    config_path: Annotated[
        Path | None,
        typer.Option("--config", "-c", help="Path to upload_config.json"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log per-part detail"),
    ] = False,
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write logs to this file"),
    ] = None,
) -> None:
    """Load configuration shared by every command."""
    setup_logging(verbose, log_file)
    try:
        ctx.obj = load_upload_config(config_path)
    except (ValueError, OSError) as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=1)


def get_config(ctx: typer.Context) -> UploadConfig:
    """Type-safe accessor for the UploadConfig stored by the callback."""
    if ctx.obj is None:
        return load_upload_config()
    return ctx.obj


# ---------------------------------------------------------------------------
# Engine wiring
# ---------------------------------------------------------------------------


@dataclass
class _Engine:
    remote: RemoteUploadClient
    store: ResumeStateStore
    orchestrator: QueuedUploadOrchestrator
    tracker: UploadProgressTracker


@asynccontextmanager
async def _open_engine(config: UploadConfig) -> AsyncIterator[_Engine]:
    async with AsyncExitStack() as stack:
        remote = await stack.enter_async_context(
            RemoteUploadClient(
                config.base_url,
                timeout_seconds=config.request_timeout_seconds,
                connect_timeout_seconds=config.connect_timeout_seconds,
            )
        )
        storage = await stack.enter_async_context(
            StorageUploader(
                timeout_seconds=config.request_timeout_seconds,
                connect_timeout_seconds=config.connect_timeout_seconds,
            )
        )
        store = await stack.enter_async_context(ResumeStateStore(config.state_db_path))
        machine = FileUploadStateMachine(remote, storage, store, config.chunk_bytes)
        tracker = UploadProgressTracker()
        orchestrator = QueuedUploadOrchestrator(machine, SessionCoordinator(remote), tracker)
        try:
            yield _Engine(remote, store, orchestrator, tracker)
        finally:
            await orchestrator.close()


def _install_signal_handlers(orchestrator: QueuedUploadOrchestrator) -> None:
    """First Ctrl+C pauses (state is kept for ``resume``); the second cancels."""
    loop = asyncio.get_running_loop()
    count = 0

    def _handler() -> None:
        nonlocal count
        count += 1
        if count == 1:
            logger.warning(
                "Pausing uploads; progress is saved. Run 'mpupload resume' to continue. "
                "Press Ctrl+C again to cancel."
            )
            orchestrator.pause_all()
        else:
            logger.warning("Canceling all uploads.")
            orchestrator.cancel_all()

    try:
        loop.add_signal_handler(signal.SIGINT, _handler)
        loop.add_signal_handler(signal.SIGTERM, _handler)
    except (NotImplementedError, RuntimeError):
        # add_signal_handler is unavailable on some platforms
        logger.debug("Could not set signal handlers")


async def _drive(
    config: UploadConfig,
    admit: Callable[[_Engine], Awaitable[dict[str, asyncio.Future[JobOutcome]]]],
) -> dict[str, JobOutcome | None]:
    async with _open_engine(config) as engine:
        _install_signal_handlers(engine.orchestrator)
        with engine.tracker:
            futures = await admit(engine)
            await engine.orchestrator.join()
        return _collect_outcomes(futures)


def _collect_outcomes(
    futures: dict[str, asyncio.Future[JobOutcome]],
) -> dict[str, JobOutcome | None]:
    """Resolved outcome per file; ``None`` marks a file left paused and resumable."""
    return {
        path: future.result() if future.done() else None
        for path, future in futures.items()
    }


def _print_summary(outcomes: dict[str, JobOutcome | None]) -> None:
    table = Table(title="Upload Summary")
    table.add_column("File", style="cyan", no_wrap=True)
    table.add_column("Outcome", justify="right")
    styles = {
        JobOutcome.COMPLETED: "green",
        JobOutcome.FAILED: "red",
        JobOutcome.CANCELED: "yellow",
    }
    for path, outcome in outcomes.items():
        if outcome is None:
            table.add_row(path, "[blue]paused (resumable)[/blue]")
            continue
        style = styles[outcome]
        table.add_row(path, f"[{style}]{outcome.value}[/{style}]")
    console.print(table)
    if any(outcome is None for outcome in outcomes.values()):
        console.print("[dim]Run 'mpupload resume' to continue paused uploads.[/dim]")


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command()
def upload(
    ctx: typer.Context,
    paths: Annotated[
        list[Path],
        typer.Argument(help="Files to upload"),
    ],
    user_id: Annotated[
        str | None,
        typer.Option("--user", "-u", help="User the upload session belongs to"),
    ] = None,
    chunk_mib: Annotated[
        int | None,
        typer.Option("--chunk-mib", help="Part size in MiB for newly registered files"),
    ] = None,
) -> None:
    """Upload files one at a time, resuming any earlier progress.

    Press Ctrl+C once to pause (progress is saved), twice to cancel.
    """
    config = get_config(ctx)
    if chunk_mib is not None:
        if chunk_mib <= 0:
            console.print("[red]Error:[/red] --chunk-mib must be positive")
            raise typer.Exit(code=1)
        config.chunk_bytes = chunk_mib * 1024 * 1024
    user = user_id or config.user_id

    console.print(
        Panel(
            f"Uploading [bold]{len(paths)}[/bold] file(s) to [bold]{config.base_url}[/bold]\n"
            f"Part size: {config.chunk_bytes // 1024} KiB | User: {user}",
            title="Multipart Upload",
        )
    )

    async def _admit(engine: _Engine) -> dict[str, asyncio.Future[JobOutcome]]:
        return {
            str(path.resolve()): engine.orchestrator.enqueue_file(user, str(path.resolve()))
            for path in paths
        }

    outcomes = asyncio.run(_drive(config, _admit))
    _print_summary(outcomes)
    if any(o != JobOutcome.COMPLETED for o in outcomes.values()):
        raise typer.Exit(code=1)


@app.command()
def resume(
    ctx: typer.Context,
    user_id: Annotated[
        str | None,
        typer.Option("--user", "-u", help="User the upload session belongs to"),
    ] = None,
) -> None:
    """Finish every upload left unfinished by an earlier run."""
    config = get_config(ctx)
    user = user_id or config.user_id

    async def _admit(engine: _Engine) -> dict[str, asyncio.Future[JobOutcome]]:
        result = await RecoveryManager(engine.store, engine.orchestrator, user).run()
        for path in result.pruned:
            console.print(f"[yellow]Dropped[/yellow] {path} (file no longer exists)")
        for error in result.errors:
            console.print(f"[red]{error}[/red]")
        return result.futures

    outcomes = asyncio.run(_drive(config, _admit))
    if not outcomes:
        console.print("[green]Nothing to resume.[/green]")
        return
    _print_summary(outcomes)
    if any(o != JobOutcome.COMPLETED for o in outcomes.values()):
        raise typer.Exit(code=1)


@app.command()
def status(ctx: typer.Context) -> None:
    """Show uploads with persisted resume state."""
    config = get_config(ctx)

    async def _load():
        async with ResumeStateStore(config.state_db_path) as store:
            return await store.load()

    entries = asyncio.run(_load())
    if not entries:
        console.print("[green]No unfinished uploads.[/green]")
        return

    table = Table(title=f"Unfinished uploads ({config.state_db_path})")
    table.add_column("File", style="cyan", overflow="fold")
    table.add_column("File ID")
    table.add_column("Parts", justify="right")
    table.add_column("Progress", justify="right")
    table.add_column("Updated", style="dim")
    for path, entry in entries.items():
        table.add_row(
            path,
            entry.file_id,
            f"{entry.uploaded_parts_count}/{entry.total_parts}",
            f"{entry.progress_percent}%",
            entry.updated_at or "",
        )
    console.print(table)


@app.command()
def forget(
    ctx: typer.Context,
    path: Annotated[Path, typer.Argument(help="File whose resume state to delete")],
) -> None:
    """Delete the persisted resume state of one file."""
    config = get_config(ctx)

    async def _remove() -> bool:
        async with ResumeStateStore(config.state_db_path) as store:
            return await store.remove(str(path.resolve()))

    if asyncio.run(_remove()):
        console.print(f"Forgot [cyan]{path}[/cyan]")
    else:
        console.print(f"[yellow]No resume state for {path}[/yellow]")


# ---------------------------------------------------------------------------
# Session commands
# ---------------------------------------------------------------------------


def _session_call(ctx: typer.Context, action: str, session_id: str) -> None:
    config = get_config(ctx)

    async def _call() -> None:
        async with RemoteUploadClient(
            config.base_url,
            timeout_seconds=config.request_timeout_seconds,
            connect_timeout_seconds=config.connect_timeout_seconds,
        ) as remote:
            await getattr(remote, f"{action}_session")(session_id)

    try:
        asyncio.run(_call())
    except UploadError as e:
        console.print(f"[red]Failed to {action} session {session_id}:[/red] {e}")
        raise typer.Exit(code=1)
    console.print(f"Session [bold]{session_id}[/bold]: {action} requested")


@session_app.command("pause")
def session_pause(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Remote session id")],
) -> None:
    """Pause a remote upload session."""
    _session_call(ctx, "pause", session_id)


@session_app.command("resume")
def session_resume(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Remote session id")],
) -> None:
    """Resume a paused remote upload session."""
    _session_call(ctx, "resume", session_id)


@session_app.command("complete")
def session_complete(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Remote session id")],
) -> None:
    """Mark a remote upload session as completed."""
    _session_call(ctx, "complete", session_id)


@session_app.command("status")
def session_status(
    ctx: typer.Context,
    session_id: Annotated[str, typer.Argument(help="Remote session id")],
) -> None:
    """Show the files of a remote upload session."""
    config = get_config(ctx)

    async def _fetch():
        async with RemoteUploadClient(
            config.base_url,
            timeout_seconds=config.request_timeout_seconds,
            connect_timeout_seconds=config.connect_timeout_seconds,
        ) as remote:
            return await remote.get_session_status(session_id)

    try:
        result = asyncio.run(_fetch())
    except UploadError as e:
        console.print(f"[red]Failed to fetch session {session_id}:[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Session {result.session_id}")
    table.add_column("File", style="cyan")
    table.add_column("File ID")
    table.add_column("Chunks", justify="right")
    table.add_column("Status")
    for item in result.files or []:
        table.add_row(
            item.file_name,
            item.file_id,
            f"{item.uploaded_chunks}/{item.total_chunks}",
            item.status,
        )
    console.print(table)


def main() -> None:
    app()

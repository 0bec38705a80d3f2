"""Async SQLite store for per-file resume state.

Wraps aiosqlite to persist, per local file path, the remote registration
(fileId/uploadId) and upload progress of every unfinished upload.  An
entry is written right after registration and after every acknowledged
part, and deleted once the service acknowledges completion.

The store never raises on corrupt or missing backing storage: an
unreadable database file is moved aside and replaced with an empty one,
reads fall back to an empty mapping and failed writes are logged.  Losing
entries only costs a re-registration, because the remote part list is
authoritative on resume.

Each write commits immediately under a lock -- no transaction is held
across unrelated ``await`` boundaries.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from mpupload.models import ResumeEntry, path_key
from mpupload.upload.exceptions import StateOwnershipError

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS resume_state (
    path_key             TEXT PRIMARY KEY,
    file_path            TEXT NOT NULL,
    file_id              TEXT NOT NULL,
    upload_id            TEXT NOT NULL,
    session_id           TEXT,
    file_size_bytes      INTEGER NOT NULL DEFAULT 0,
    part_size_bytes      INTEGER NOT NULL DEFAULT 0,
    total_parts          INTEGER NOT NULL,
    uploaded_parts_count INTEGER NOT NULL DEFAULT 0,
    progress_percent     INTEGER NOT NULL DEFAULT 0,
    parts_json           TEXT NOT NULL DEFAULT '[]',
    updated_at           TEXT NOT NULL
)
"""

_COLUMNS = (
    "path_key, file_path, file_id, upload_id, session_id, file_size_bytes, "
    "part_size_bytes, total_parts, uploaded_parts_count, progress_percent, "
    "parts_json, updated_at"
)
_PLACEHOLDERS = ", ".join("?" for _ in _COLUMNS.split(","))

_SCHEMA_VERSION = 2


class PathLease:
    """Exclusive write access to one path's resume entry.

    Obtained from :meth:`ResumeStateStore.lease`; invalid once the
    ``async with`` block exits.
    """

    def __init__(self, store: ResumeStateStore, file_path: str) -> None:
        self._store = store
        self.file_path = file_path
        self.released = False

    async def upsert(self, entry: ResumeEntry) -> bool:
        return await self._store.upsert(self.file_path, entry, owner=self)

    async def remove(self) -> bool:
        return await self._store.remove(self.file_path, owner=self)


class ResumeStateStore:
    """Crash-safe mapping of local file path -> :class:`ResumeEntry`.

    Keys are absolute paths compared case-insensitively.

    Usage::

        async with ResumeStateStore("data/upload_state.db") as store:
            async with store.lease("/data/a.bin") as lease:
                await lease.upsert(entry)
            entries = await store.load()
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()
        self._leases: dict[str, PathLease] = {}

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the database, replacing it with an empty one if corrupt.

        When the location cannot hold a database at all (unwritable
        directory, a parent path that is a regular file) the store runs on
        an in-memory database for this process.
        """
        try:
            await self._open(self.db_path)
            return
        except (aiosqlite.Error, OSError) as exc:
            logger.warning(
                "Resume state %s is unreadable (%s); starting with empty state",
                self.db_path,
                exc,
            )
            await self.close()

        if os.path.isfile(self.db_path) and self._quarantine():
            try:
                await self._open(self.db_path)
                return
            except (aiosqlite.Error, OSError) as exc:
                logger.error("Could not recreate resume state %s (%s)", self.db_path, exc)
                await self.close()

        logger.warning(
            "Using in-memory resume state; progress will not survive a restart"
        )
        await self._open(":memory:")

    async def _open(self, db_path: str) -> None:
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.execute("PRAGMA synchronous=NORMAL")
        cursor = await self._db.execute("PRAGMA quick_check")
        row = await cursor.fetchone()
        if row is None or row[0] != "ok":
            raise aiosqlite.DatabaseError(f"integrity check failed: {row[0] if row else None}")
        await self._db.execute(_SCHEMA)
        await self._migrate(self._db)
        await self._db.commit()

    @staticmethod
    async def _migrate(db: aiosqlite.Connection) -> None:
        """Add columns introduced after the table was first created."""
        cursor = await db.execute("PRAGMA table_info(resume_state)")
        columns = {row[1] for row in await cursor.fetchall()}
        if "part_size_bytes" not in columns:
            await db.execute(
                "ALTER TABLE resume_state "
                "ADD COLUMN part_size_bytes INTEGER NOT NULL DEFAULT 0"
            )
            logger.info("Added part_size_bytes column to resume state")
        await db.execute(f"PRAGMA user_version = {_SCHEMA_VERSION}")

    def _quarantine(self) -> bool:
        """Move a corrupt database file aside; return False if that failed."""
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        target = f"{self.db_path}.corrupt-{stamp}"
        try:
            os.replace(self.db_path, target)
            for suffix in ("-wal", "-shm"):
                if os.path.exists(self.db_path + suffix):
                    os.remove(self.db_path + suffix)
        except OSError as exc:
            logger.error(
                "Could not move corrupt resume state %s aside (%s)",
                self.db_path,
                exc,
            )
            return False
        logger.warning("Moved corrupt resume state to %s", target)
        return True

    async def close(self) -> None:
        """Close the connection if open."""
        if self._db is not None:
            try:
                await self._db.close()
            except aiosqlite.Error:
                logger.debug("Error closing resume state", exc_info=True)
            self._db = None

    async def __aenter__(self) -> ResumeStateStore:
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _ensure_connected(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Not connected -- use 'async with' or call connect()")
        return self._db

    @staticmethod
    def _now_iso() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")

    def _row_values(self, entry: ResumeEntry, file_path: str | None = None) -> tuple:
        file_path = file_path or entry.file_path
        return (
            path_key(file_path),
            os.path.abspath(file_path),
            entry.file_id,
            entry.upload_id,
            entry.session_id,
            entry.file_size_bytes,
            entry.part_size_bytes,
            entry.total_parts,
            entry.uploaded_parts_count,
            entry.progress_percent,
            json.dumps([[n, tag] for n, tag in entry.parts]),
            self._now_iso(),
        )

    @staticmethod
    def _row_to_entry(row: aiosqlite.Row) -> ResumeEntry:
        try:
            parts = [(int(n), str(tag)) for n, tag in json.loads(row["parts_json"])]
        except (ValueError, TypeError):
            logger.warning("Discarding unreadable part cache for %s", row["file_path"])
            parts = []
        return ResumeEntry(
            file_path=row["file_path"],
            file_id=row["file_id"],
            upload_id=row["upload_id"],
            total_parts=row["total_parts"],
            uploaded_parts_count=row["uploaded_parts_count"],
            progress_percent=row["progress_percent"],
            session_id=row["session_id"],
            file_size_bytes=row["file_size_bytes"],
            part_size_bytes=row["part_size_bytes"],
            parts=parts,
            updated_at=row["updated_at"],
        )

    def _check_owner(self, file_path: str, owner: PathLease | None) -> None:
        if owner is not None and owner.released:
            raise StateOwnershipError(f"Lease on {file_path} has been released")
        current = self._leases.get(path_key(file_path))
        if current is not None and current is not owner:
            raise StateOwnershipError(f"{file_path} is owned by an active upload run")

    # ------------------------------------------------------------------
    # Ownership
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def lease(self, file_path: str) -> AsyncIterator[PathLease]:
        """Hold exclusive write access to *file_path*'s entry.

        Raises:
            StateOwnershipError: If another run already holds the lease.
        """
        key = path_key(file_path)
        if key in self._leases:
            raise StateOwnershipError(f"{file_path} is already owned by another run")
        lease = PathLease(self, file_path)
        self._leases[key] = lease
        try:
            yield lease
        finally:
            lease.released = True
            self._leases.pop(key, None)

    def is_leased(self, file_path: str) -> bool:
        return path_key(file_path) in self._leases

    # ------------------------------------------------------------------
    # Read queries
    # ------------------------------------------------------------------

    async def load(self) -> dict[str, ResumeEntry]:
        """Return every entry keyed by absolute file path (empty on error)."""
        try:
            db = self._ensure_connected()
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM resume_state ORDER BY updated_at, file_path"
            )
            rows = await cursor.fetchall()
        except aiosqlite.Error:
            logger.warning("Could not read resume state; treating as empty", exc_info=True)
            return {}
        entries = [self._row_to_entry(row) for row in rows]
        return {entry.file_path: entry for entry in entries}

    async def get(self, file_path: str) -> ResumeEntry | None:
        """Return the entry for *file_path* or ``None`` (also on error)."""
        try:
            db = self._ensure_connected()
            cursor = await db.execute(
                f"SELECT {_COLUMNS} FROM resume_state WHERE path_key = ?",
                (path_key(file_path),),
            )
            row = await cursor.fetchone()
        except aiosqlite.Error:
            logger.warning("Could not read resume state for %s", file_path, exc_info=True)
            return None
        return self._row_to_entry(row) if row is not None else None

    # ------------------------------------------------------------------
    # Write operations (each commits immediately)
    # ------------------------------------------------------------------

    async def save(self, entries: dict[str, ResumeEntry]) -> bool:
        """Atomically replace the whole mapping with *entries*.

        Raises:
            StateOwnershipError: If any path is currently leased.
        """
        if self._leases:
            raise StateOwnershipError(
                "Cannot overwrite resume state while uploads own entries: "
                + ", ".join(lease.file_path for lease in self._leases.values())
            )
        rows = [self._row_values(entry) for entry in entries.values()]
        async with self._write_lock:
            db = self._ensure_connected()
            try:
                await db.execute("DELETE FROM resume_state")
                await db.executemany(
                    f"INSERT OR REPLACE INTO resume_state ({_COLUMNS}) "
                    f"VALUES ({_PLACEHOLDERS})",
                    rows,
                )
                await db.commit()
            except aiosqlite.Error:
                logger.error("Failed to save resume state", exc_info=True)
                await self._rollback(db)
                return False
        logger.debug("Saved %d resume entries", len(rows))
        return True

    async def upsert(
        self,
        file_path: str,
        entry: ResumeEntry,
        owner: PathLease | None = None,
    ) -> bool:
        """Insert or replace the entry for *file_path*.

        Raises:
            StateOwnershipError: If the path is leased by someone else.
        """
        self._check_owner(file_path, owner)
        async with self._write_lock:
            db = self._ensure_connected()
            try:
                await db.execute(
                    f"INSERT OR REPLACE INTO resume_state ({_COLUMNS}) "
                    f"VALUES ({_PLACEHOLDERS})",
                    self._row_values(entry, file_path),
                )
                await db.commit()
            except aiosqlite.Error:
                logger.error("Failed to persist resume state for %s", file_path, exc_info=True)
                await self._rollback(db)
                return False
        logger.debug(
            "Persisted %s: %d/%d parts (%d%%)",
            file_path,
            entry.uploaded_parts_count,
            entry.total_parts,
            entry.progress_percent,
        )
        return True

    async def remove(self, file_path: str, owner: PathLease | None = None) -> bool:
        """Delete the entry for *file_path*; return whether one existed.

        Raises:
            StateOwnershipError: If the path is leased by someone else.
        """
        self._check_owner(file_path, owner)
        async with self._write_lock:
            db = self._ensure_connected()
            try:
                cursor = await db.execute(
                    "DELETE FROM resume_state WHERE path_key = ?",
                    (path_key(file_path),),
                )
                await db.commit()
            except aiosqlite.Error:
                logger.error("Failed to remove resume state for %s", file_path, exc_info=True)
                await self._rollback(db)
                return False
        removed = cursor.rowcount > 0
        if removed:
            logger.debug("Removed resume state for %s", file_path)
        return removed

    @staticmethod
    async def _rollback(db: aiosqlite.Connection) -> None:
        try:
            await db.rollback()
        except aiosqlite.Error:
            logger.debug("Rollback failed", exc_info=True)

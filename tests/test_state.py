"""Tests for ResumeStateStore: persistence, corruption handling and leases."""

from __future__ import annotations

import os
from pathlib import Path

import aiosqlite
import pytest

from mpupload.models import ResumeEntry
from mpupload.upload.exceptions import StateOwnershipError
from mpupload.upload.state import ResumeStateStore


def _entry(path: str, uploaded: int = 1) -> ResumeEntry:
    return ResumeEntry(
        file_path=path,
        file_id="f-1",
        upload_id="u-1",
        total_parts=3,
        uploaded_parts_count=uploaded,
        progress_percent=42,
        session_id="s-1",
        file_size_bytes=12,
        parts=[(n, f"e{n}") for n in range(1, uploaded + 1)],
    )


# ======================================================================
# Basic persistence
# ======================================================================


class TestPersistence:
    @pytest.mark.asyncio
    async def test_upsert_then_get_survives_reopen(self, tmp_path: Path):
        db = str(tmp_path / "state.db")
        async with ResumeStateStore(db) as store:
            assert await store.upsert("/data/A.bin", _entry("/data/A.bin", 2))

        async with ResumeStateStore(db) as store:
            entry = await store.get("/DATA/a.bin")

        assert entry is not None
        assert entry.file_path == "/data/A.bin"
        assert entry.uploaded_parts_count == 2
        assert entry.parts == [(1, "e1"), (2, "e2")]
        assert entry.updated_at

    @pytest.mark.asyncio
    async def test_upsert_replaces_existing_key(self, store):
        await store.upsert("/data/a.bin", _entry("/data/a.bin", 1))
        await store.upsert("/DATA/A.BIN", _entry("/DATA/A.BIN", 2))

        entries = await store.load()

        assert len(entries) == 1
        assert next(iter(entries.values())).uploaded_parts_count == 2

    @pytest.mark.asyncio
    async def test_save_overwrites_whole_mapping(self, store):
        await store.upsert("/data/old.bin", _entry("/data/old.bin"))

        await store.save({"/data/a.bin": _entry("/data/a.bin"), "/data/b.bin": _entry("/data/b.bin")})

        assert sorted(await store.load()) == ["/data/a.bin", "/data/b.bin"]

    @pytest.mark.asyncio
    async def test_remove_reports_whether_entry_existed(self, store):
        await store.upsert("/data/a.bin", _entry("/data/a.bin"))

        assert await store.remove("/data/A.bin") is True
        assert await store.remove("/data/a.bin") is False
        assert await store.get("/data/a.bin") is None


# ======================================================================
# Corruption
# ======================================================================


class TestCorruption:
    @pytest.mark.asyncio
    async def test_corrupt_file_is_quarantined_and_empty(self, tmp_path: Path):
        db = tmp_path / "state.db"
        db.write_bytes(b"this is not a sqlite database" * 100)

        async with ResumeStateStore(str(db)) as store:
            assert await store.load() == {}
            assert await store.upsert("/data/a.bin", _entry("/data/a.bin"))
            assert await store.get("/data/a.bin") is not None

        quarantined = [p for p in os.listdir(tmp_path) if ".corrupt-" in p]
        assert len(quarantined) == 1

    @pytest.mark.asyncio
    async def test_missing_directory_is_created(self, tmp_path: Path):
        db = tmp_path / "nested" / "dir" / "state.db"
        async with ResumeStateStore(str(db)) as store:
            assert await store.load() == {}
        assert db.exists()

    @pytest.mark.asyncio
    async def test_unusable_location_falls_back_to_memory(self, tmp_path: Path):
        blocker = tmp_path / "f"
        blocker.write_text("not a directory")
        db = blocker / "sub" / "state.db"

        async with ResumeStateStore(str(db)) as store:
            assert await store.load() == {}
            assert await store.upsert("/data/a.bin", _entry("/data/a.bin"))
            assert (await store.get("/data/a.bin")).file_id == "f-1"

        assert blocker.read_text() == "not a directory"

    @pytest.mark.asyncio
    async def test_table_without_part_size_is_migrated(self, tmp_path: Path):
        db = str(tmp_path / "state.db")
        async with aiosqlite.connect(db) as conn:
            await conn.execute(
                "CREATE TABLE resume_state ("
                "path_key TEXT PRIMARY KEY, file_path TEXT NOT NULL, "
                "file_id TEXT NOT NULL, upload_id TEXT NOT NULL, session_id TEXT, "
                "file_size_bytes INTEGER NOT NULL DEFAULT 0, total_parts INTEGER NOT NULL, "
                "uploaded_parts_count INTEGER NOT NULL DEFAULT 0, "
                "progress_percent INTEGER NOT NULL DEFAULT 0, "
                "parts_json TEXT NOT NULL DEFAULT '[]', updated_at TEXT NOT NULL)"
            )
            await conn.execute(
                "INSERT INTO resume_state VALUES "
                "('/data/old.bin', '/data/old.bin', 'f-0', 'u-0', NULL, 12, 3, 1, 42, "
                "'[[1, \"e1\"]]', '2024-01-01T00:00:00.000000')"
            )
            await conn.commit()

        async with ResumeStateStore(db) as store:
            old = await store.get("/data/old.bin")
            assert old.part_size_bytes == 0
            assert old.parts == [(1, "e1")]

            entry = _entry("/data/new.bin")
            entry.part_size_bytes = 5
            assert await store.upsert("/data/new.bin", entry)
            assert (await store.get("/data/new.bin")).part_size_bytes == 5

    @pytest.mark.asyncio
    async def test_unreadable_parts_cache_is_dropped(self, store):
        await store.upsert("/data/a.bin", _entry("/data/a.bin"))
        db = store._ensure_connected()
        await db.execute("UPDATE resume_state SET parts_json = 'not json'")
        await db.commit()

        entry = await store.get("/data/a.bin")

        assert entry.parts == []
        assert entry.file_id == "f-1"


# ======================================================================
# Ownership
# ======================================================================


class TestLeases:
    @pytest.mark.asyncio
    async def test_lease_holder_can_write(self, store):
        async with store.lease("/data/a.bin") as lease:
            assert await lease.upsert(_entry("/data/a.bin"))
            assert store.is_leased("/DATA/A.bin")
        assert not store.is_leased("/data/a.bin")
        assert await store.get("/data/a.bin") is not None

    @pytest.mark.asyncio
    async def test_others_cannot_write_leased_path(self, store):
        async with store.lease("/data/a.bin"):
            with pytest.raises(StateOwnershipError):
                await store.upsert("/data/a.bin", _entry("/data/a.bin"))
            with pytest.raises(StateOwnershipError):
                await store.remove("/data/A.BIN")
            with pytest.raises(StateOwnershipError):
                await store.save({})
            # other paths are unaffected
            assert await store.upsert("/data/b.bin", _entry("/data/b.bin"))

    @pytest.mark.asyncio
    async def test_second_lease_is_refused(self, store):
        async with store.lease("/data/a.bin"):
            with pytest.raises(StateOwnershipError):
                async with store.lease("/data/A.bin"):
                    pass

    @pytest.mark.asyncio
    async def test_released_lease_cannot_write(self, store):
        async with store.lease("/data/a.bin") as lease:
            pass
        with pytest.raises(StateOwnershipError):
            await lease.upsert(_entry("/data/a.bin"))

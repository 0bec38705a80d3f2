"""Tests for part planning arithmetic, ETag normalization and job accounting."""

from __future__ import annotations

import pytest

from mpupload.models import (
    FileUploadJob,
    PartRecord,
    ResumeEntry,
    normalize_etag,
    path_key,
    progress_percent,
)
from mpupload.upload.planner import count_parts, plan_parts

MiB = 1024 * 1024


class TestPlanParts:
    @pytest.mark.parametrize(
        ("size", "chunk", "expected"),
        [
            (0, 5, 1),
            (1, 5, 1),
            (5, 5, 1),
            (6, 5, 2),
            (10, 5, 2),
            (12 * MiB, 5 * MiB, 3),
        ],
    )
    def test_count_parts(self, size, chunk, expected):
        assert count_parts(size, chunk) == expected

    def test_part_sizes_sum_to_file_size(self):
        plan = plan_parts(12 * MiB, 5 * MiB)

        sizes = [plan.part_size_of(n) for n in range(1, plan.total_parts + 1)]

        assert sizes == [5 * MiB, 5 * MiB, 2 * MiB]
        assert sum(sizes) == 12 * MiB

    def test_offsets_are_contiguous(self):
        plan = plan_parts(23, 5)
        offset = 0
        for n in range(1, plan.total_parts + 1):
            assert plan.offset_of(n) == offset
            offset += plan.part_size_of(n)
        assert offset == 23

    def test_exact_multiple_has_full_last_part(self):
        plan = plan_parts(10, 5)
        assert plan.part_size_of(2) == 5

    @pytest.mark.parametrize("part_number", [0, 4, -1])
    def test_out_of_range_part_rejected(self, part_number):
        plan = plan_parts(12, 5)
        with pytest.raises(ValueError):
            plan.part_size_of(part_number)
        with pytest.raises(ValueError):
            plan.offset_of(part_number)

    @pytest.mark.parametrize(("size", "chunk"), [(10, 0), (10, -5), (-1, 5)])
    def test_invalid_input_rejected(self, size, chunk):
        with pytest.raises(ValueError):
            plan_parts(size, chunk)


class TestNormalizeEtag:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ('"abc"', "abc"),
            ("abc", "abc"),
            ('  "abc"  ', "abc"),
            ('""abc""', '"abc"'),
            ('"', '"'),
            ("", ""),
            (None, ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_etag(raw) == expected

    def test_idempotent_on_normalized_tags(self):
        for tag in ('"abc"', "abc", ' "9b2cf535f27731c974343645a3985328-3" '):
            assert normalize_etag(normalize_etag(tag)) == normalize_etag(tag)

    def test_nested_quotes_lose_one_pair_per_call(self):
        once = normalize_etag('""abc""')
        assert once == '"abc"'
        assert normalize_etag(once) == "abc"


class TestJobAccounting:
    def _job(self) -> FileUploadJob:
        return FileUploadJob(
            file_path="/data/Video.MP4",
            file_size_bytes=12,
            part_size_bytes=5,
            total_parts=3,
        )

    def test_derived_fields_follow_parts(self):
        job = self._job()
        assert job.sent_bytes == 0
        assert job.next_part_number == 1

        job.record_part(PartRecord(1, "e1", 5))
        job.record_part(PartRecord(3, "e3", 2))

        assert job.sent_bytes == 7
        assert job.next_part_number == 4
        assert not job.all_parts_present
        assert job.progress_percent == 58

    def test_record_part_replaces_same_number(self):
        job = self._job()
        job.record_part(PartRecord(1, "old", 5))
        job.record_part(PartRecord(1, "new", 5))

        assert job.sent_bytes == 5
        assert job.sorted_parts() == [PartRecord(1, "new", 5)]

    def test_resume_entry_snapshot(self):
        job = self._job()
        job.file_id, job.upload_id = "f1", "u1"
        job.record_part(PartRecord(2, "e2", 5))
        job.record_part(PartRecord(1, "e1", 5))

        entry = ResumeEntry.from_job(job)

        assert entry.uploaded_parts_count == 2
        assert entry.progress_percent == 83
        assert entry.parts == [(1, "e1"), (2, "e2")]

    def test_path_key_is_case_insensitive(self):
        assert path_key("/data/Video.MP4") == path_key("/DATA/video.mp4")

    @pytest.mark.parametrize(
        ("sent", "total", "expected"),
        [(0, 0, 0), (0, 10, 0), (5, 12, 42), (10, 12, 83), (12, 12, 100), (20, 12, 100)],
    )
    def test_progress_percent(self, sent, total, expected):
        assert progress_percent(sent, total) == expected

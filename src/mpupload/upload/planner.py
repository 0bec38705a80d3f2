"""Part planning: file size to multipart part count and sizes."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class PartPlan:
    """How a file of ``file_size_bytes`` is split into parts.

    Every part is ``chunk_bytes`` long except the last, which holds the
    remainder.  An empty file still has one (empty) part.
    """

    file_size_bytes: int
    chunk_bytes: int
    total_parts: int

    def _check(self, part_number: int) -> None:
        if not 1 <= part_number <= self.total_parts:
            raise ValueError(
                f"part_number {part_number} out of range 1..{self.total_parts}"
            )

    def part_size_of(self, part_number: int) -> int:
        self._check(part_number)
        if part_number < self.total_parts:
            return self.chunk_bytes
        return self.file_size_bytes - self.chunk_bytes * (self.total_parts - 1)

    def offset_of(self, part_number: int) -> int:
        self._check(part_number)
        return self.chunk_bytes * (part_number - 1)


def count_parts(file_size_bytes: int, chunk_bytes: int) -> int:
    """``ceil(file_size_bytes / chunk_bytes)``, minimum 1."""
    if chunk_bytes <= 0:
        raise ValueError(f"chunk_bytes must be positive, got {chunk_bytes}")
    if file_size_bytes < 0:
        raise ValueError(f"file_size_bytes must be >= 0, got {file_size_bytes}")
    return max(1, -(-file_size_bytes // chunk_bytes))


def plan_parts(file_size_bytes: int, chunk_bytes: int) -> PartPlan:
    """Plan the parts of a file.

    Args:
        file_size_bytes: Size of the local file.
        chunk_bytes: Target part size.

    Returns:
        A :class:`PartPlan`.

    Raises:
        ValueError: If *chunk_bytes* is not positive or the size is negative.
    """
    total = count_parts(file_size_bytes, chunk_bytes)
    return PartPlan(
        file_size_bytes=file_size_bytes,
        chunk_bytes=chunk_bytes,
        total_parts=total,
    )

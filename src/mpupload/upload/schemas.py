"""Pydantic wire models for the remote upload service.

The service speaks camelCase JSON; models accept either the alias or the
field name and serialize with aliases.
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from mpupload.models import normalize_etag


class WireModel(BaseModel):
    """Base for all request/response bodies."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_json_body(self) -> dict:
        """camelCase dict for an httpx ``json=`` body."""
        return self.model_dump(by_alias=True)


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class StartSessionRequest(WireModel):
    user_id: str


class RegisterFileRequest(WireModel):
    file_name: str
    file_size: int
    chunk_count: int


class PresignPartRequest(WireModel):
    part_number: int


class PartETag(WireModel):
    """A ``{partNumber, eTag}`` pair as used by completion and part listings."""

    part_number: int
    e_tag: str = ""

    @field_validator("e_tag", mode="before")
    @classmethod
    def _normalize(cls, v: object) -> str:
        return normalize_etag(v if isinstance(v, str) else None)


class CompleteFileRequest(WireModel):
    upload_id: str
    parts: list[PartETag]


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class StartSessionResponse(WireModel):
    session_id: str


class RegisterFileResponse(WireModel):
    file_id: str
    upload_id: str
    s3_key: str | None = None


class PresignPartResponse(WireModel):
    url: str


class FilePartsResponse(WireModel):
    """Authoritative view of which parts the service has stored."""

    file_id: str = ""
    s3_key: str | None = None
    upload_id: str = ""
    total_chunks: int = 0
    uploaded_part_numbers: list[int] = []
    pending_part_numbers: list[int] = []
    uploaded_parts: list[PartETag] = []

    @field_validator(
        "uploaded_part_numbers", "pending_part_numbers", "uploaded_parts", mode="before"
    )
    @classmethod
    def _none_as_empty(cls, v: object) -> object:
        return [] if v is None else v

    def stored_parts(self) -> dict[int, str]:
        """Union of ``uploadedPartNumbers`` and ``uploadedParts`` -> ETag ('' if unknown)."""
        stored = {n: "" for n in self.uploaded_part_numbers}
        for part in self.uploaded_parts:
            if part.e_tag or part.part_number not in stored:
                stored[part.part_number] = part.e_tag
        return stored


class FileStatusItem(WireModel):
    file_id: str
    file_name: str = ""
    total_chunks: int = 0
    uploaded_chunks: int = 0
    status: str = ""
    pending_chunk_indexes: list[int] | None = None


class SessionStatusResponse(WireModel):
    session_id: str
    files: list[FileStatusItem] | None = None

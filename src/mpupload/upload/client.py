"""HTTP client for the remote upload service.

Implements the session/file/part endpoints of the upload backend:

  1. ``POST start`` -- obtain (or reuse) the user's upload session
  2. ``POST {sessionId}/files`` -- register a file, get fileId + uploadId
  3. ``POST files/{fileId}/parts/url`` -- presign one part for a PUT
  4. ``PATCH files/{fileId}/complete`` -- assemble the uploaded parts

plus ``GET files/{fileId}/parts`` (authoritative part list used for
resume) and the session pause/resume/complete controls.

No request is retried here; callers decide what a failure means.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, ValidationError

from mpupload.models import PartRecord
from mpupload.upload.exceptions import (
    PermanentError,
    RemoteNotFoundError,
    TransientError,
)
from mpupload.upload.schemas import (
    CompleteFileRequest,
    FilePartsResponse,
    PartETag,
    PresignPartRequest,
    PresignPartResponse,
    RegisterFileRequest,
    RegisterFileResponse,
    SessionStatusResponse,
    StartSessionRequest,
    StartSessionResponse,
)

logger = logging.getLogger(__name__)


class RemoteUploadService(Protocol):
    """Operations the engine needs from the upload backend."""

    async def start_session(self, user_id: str) -> str: ...

    async def register_file(
        self, session_id: str, file_name: str, file_size: int, chunk_count: int
    ) -> RegisterFileResponse: ...

    async def presign_part(self, file_id: str, part_number: int) -> str: ...

    async def complete_file(
        self, file_id: str, upload_id: str, parts: Iterable[PartRecord]
    ) -> None: ...

    async def get_file_parts(self, file_id: str) -> FilePartsResponse: ...

    async def pause_session(self, session_id: str) -> None: ...

    async def resume_session(self, session_id: str) -> None: ...

    async def complete_session(self, session_id: str) -> None: ...


def raise_for_status(response: httpx.Response) -> None:
    """Map a non-2xx response to the engine's exception taxonomy.

    Raises:
        RemoteNotFoundError: On 404.
        TransientError: On 429 and 5xx.
        PermanentError: On any other 4xx.
    """
    status = response.status_code
    if 200 <= status < 300:
        return
    request = response.request
    message = f"{request.method} {request.url} -> {status} {response.text[:200]}".strip()
    if status == 404:
        raise RemoteNotFoundError(message, status_code=status)
    if status == 429 or status >= 500:
        raise TransientError(message, status_code=status)
    raise PermanentError(message, status_code=status)


class RemoteUploadClient:
    """Async wrapper around the upload backend's JSON API.

    Usage::

        async with RemoteUploadClient("https://host/api/v1/upload/") as api:
            session_id = await api.start_session("c001")
            reg = await api.register_file(session_id, "a.bin", 12, 1)

    Args:
        base_url: Service root; endpoint paths are joined onto it.
        timeout_seconds: Read/write timeout per request.
        connect_timeout_seconds: Connect timeout per request.
        http_client: Pre-built ``httpx.AsyncClient`` (tests inject one with
            a ``MockTransport``).  Its ``base_url`` is used as-is.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 300.0,
        connect_timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if http_client is None:
            http_client = httpx.AsyncClient(
                base_url=base_url,
                timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            )
        self._http = http_client

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> RemoteUploadClient:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        path: str,
        body: BaseModel | None = None,
    ) -> httpx.Response:
        kwargs: dict[str, Any] = {}
        if body is not None:
            kwargs["json"] = body.to_json_body()
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            raise TransientError(f"{method} {path} failed: {exc}") from exc
        logger.debug("%s %s -> %d", method, path, response.status_code)
        raise_for_status(response)
        return response

    @staticmethod
    def _parse(response: httpx.Response, model: type[BaseModel]) -> Any:
        try:
            return model.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise PermanentError(
                f"Malformed {model.__name__} from {response.request.url}: {exc}",
                status_code=response.status_code,
            ) from exc

    # ------------------------------------------------------------------
    # Session endpoints
    # ------------------------------------------------------------------

    async def start_session(self, user_id: str) -> str:
        """Start a session for *user_id*, or get the user's active one."""
        response = await self._send("POST", "start", StartSessionRequest(user_id=user_id))
        session_id = self._parse(response, StartSessionResponse).session_id
        logger.info("Session %s active for user %s", session_id, user_id)
        return session_id

    async def get_session_status(self, session_id: str) -> SessionStatusResponse:
        response = await self._send("GET", f"{session_id}/status")
        return self._parse(response, SessionStatusResponse)

    async def pause_session(self, session_id: str) -> None:
        await self._send("PATCH", f"{session_id}/pause")

    async def resume_session(self, session_id: str) -> None:
        await self._send("PATCH", f"{session_id}/resume")

    async def complete_session(self, session_id: str) -> None:
        await self._send("PATCH", f"{session_id}/complete")

    # ------------------------------------------------------------------
    # File endpoints
    # ------------------------------------------------------------------

    async def register_file(
        self,
        session_id: str,
        file_name: str,
        file_size: int,
        chunk_count: int,
    ) -> RegisterFileResponse:
        """Register a file in *session_id* and open its multipart upload."""
        request = RegisterFileRequest(
            file_name=file_name, file_size=file_size, chunk_count=chunk_count
        )
        response = await self._send("POST", f"{session_id}/files", request)
        return self._parse(response, RegisterFileResponse)

    async def presign_part(self, file_id: str, part_number: int) -> str:
        """Return a presigned PUT URL for one part."""
        response = await self._send(
            "POST",
            f"files/{file_id}/parts/url",
            PresignPartRequest(part_number=part_number),
        )
        return self._parse(response, PresignPartResponse).url

    async def complete_file(
        self,
        file_id: str,
        upload_id: str,
        parts: Iterable[PartRecord],
    ) -> None:
        """Ask the service to assemble *parts* (already sorted by the caller)."""
        request = CompleteFileRequest(
            upload_id=upload_id,
            parts=[PartETag(part_number=p.part_number, e_tag=p.etag) for p in parts],
        )
        await self._send("PATCH", f"files/{file_id}/complete", request)

    async def get_file_parts(self, file_id: str) -> FilePartsResponse:
        """Return the service's authoritative list of stored parts."""
        response = await self._send("GET", f"files/{file_id}/parts")
        return self._parse(response, FilePartsResponse)

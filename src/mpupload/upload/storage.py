"""Object-storage part uploader (PUT to a presigned URL)."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from mpupload.models import normalize_etag
from mpupload.upload.exceptions import StorageError

logger = logging.getLogger(__name__)


class PartUploader(Protocol):
    """Sends one part's bytes and returns the storage ETag."""

    async def put_part(self, url: str, data: bytes) -> str: ...


def _truncate_url(url: str, max_len: int = 120) -> str:
    """Drop the query string (signature) and shorten for log output."""
    base = url.split("?", 1)[0]
    if len(base) <= max_len:
        return base
    return base[: max_len - 3] + "..."


class StorageUploader:
    """PUTs part bodies to presigned object-storage URLs.

    Any non-2xx status, or a 2xx without an ``ETag`` header, is a hard
    failure for the part; nothing is credited.
    """

    def __init__(
        self,
        timeout_seconds: float = 300.0,
        connect_timeout_seconds: float = 10.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        if http_client is None:
            http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds, connect=connect_timeout_seconds),
            )
        self._http = http_client

    async def close(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> StorageUploader:
        return self

    async def __aexit__(
        self,
        exc_type: type | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    async def put_part(self, url: str, data: bytes) -> str:
        """Upload *data* to *url* with an exact ``Content-Length``.

        Returns:
            The ETag with surrounding quotes stripped.

        Raises:
            StorageError: On transport errors, non-2xx status, or missing ETag.
        """
        short_url = _truncate_url(url)
        try:
            response = await self._http.put(
                url,
                content=data,
                headers={"Content-Length": str(len(data))},
            )
        except httpx.TransportError as exc:
            raise StorageError(f"PUT {short_url} failed: {exc}") from exc

        etag = response.headers.get("ETag")
        logger.debug(
            "PUT %s (%d bytes) -> %d etag=%s",
            short_url,
            len(data),
            response.status_code,
            etag or "(none)",
        )

        if not response.is_success:
            raise StorageError(
                f"PUT {short_url} rejected with status {response.status_code}"
            )
        tag = normalize_etag(etag)
        if not tag:
            raise StorageError(f"PUT {short_url} succeeded but no ETag was returned")
        return tag

"""File storage collaborator.

The engine never looks inside stored files. It uploads evidence bytes, keeps
the returned `{path, url}` reference on the proof, and later asks whether a
path is still retrievable (content-addressable oracle).

HttpObjectStorage talks to an S3-style object endpoint over httpx:
    PUT  {base}/{bucket}/{path}   upload
    HEAD {base}/{bucket}/{path}   existence check
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import httpx

from peer_escrow.config import get_settings
from peer_escrow.domain.exceptions import StorageUploadError
from peer_escrow.logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredFile:
    path: str
    url: str


@runtime_checkable
class FileStorage(Protocol):
    async def upload(self, data: bytes, path: str, content_type: str) -> StoredFile: ...

    async def exists(self, path: str) -> bool: ...


class HttpObjectStorage:
    """FileStorage backed by an HTTP object store."""

    def __init__(
        self,
        base_url: str | None = None,
        bucket: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._base_url = (base_url or settings.storage_base_url).rstrip("/")
        self._bucket = bucket or settings.storage_bucket
        headers = {}
        key = api_key if api_key is not None else settings.storage_api_key
        if key:
            headers["Authorization"] = f"Bearer {key}"
        self._client = client or httpx.AsyncClient(
            headers=headers,
            timeout=timeout or settings.storage_timeout_seconds,
        )

    def public_url(self, path: str) -> str:
        return f"{self._base_url}/{self._bucket}/{path.lstrip('/')}"

    async def upload(self, data: bytes, path: str, content_type: str) -> StoredFile:
        url = self.public_url(path)
        try:
            response = await self._client.put(
                url, content=data, headers={"Content-Type": content_type}
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error("storage.upload_failed", path=path, error=str(exc))
            raise StorageUploadError(path, str(exc)) from exc

        logger.info("storage.uploaded", path=path, size=len(data))
        return StoredFile(path=path, url=url)

    async def exists(self, path: str) -> bool:
        """HEAD the object. Transport errors propagate; callers bound the wait."""
        response = await self._client.head(self.public_url(path))
        if response.status_code == 404:
            return False
        return response.is_success

    async def aclose(self) -> None:
        await self._client.aclose()

"""
Producer side of the chunked upload protocol.

Splits a local file into ``ceil(size / chunk_size)`` byte ranges and walks
the manager's API for each index in order: get a slot, PUT the bytes to its
destination, record the stored chunk. Transport failures, ``Conflict`` and 5xx
answers are retried a bounded number of times with a fixed backoff; any other
manager error surfaces immediately. Files that fit in one chunk (or every file
when multipart is disabled) take the single-shot path.
"""

import asyncio
import logging
import math
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable

import httpx

from app.core.config import settings
from app.core.errors import ServiceError, Conflict, error_from_payload

logger = logging.getLogger(__name__)

@dataclass
class UploadResult:
    storage_id: str
    size: int
    num_chunks: int  # 0 for a single-shot upload
    upload_id: str | None = None

def _raise_for_error(response: httpx.Response) -> None:
    if response.is_success:
        return
    try:
        payload = response.json()
    except ValueError:
        payload = {}
    if not isinstance(payload, dict):
        payload = {}
    if not payload.get("message"):
        payload["message"] = str(payload.get("detail") or response.text[:200] or response.reason_phrase)
    err = error_from_payload(payload, default_status=response.status_code)
    if type(err) is ServiceError and not payload.get("code"):
        err.code = f"HTTP_{response.status_code}"
    raise err

def _retriable(exc: Exception) -> bool:
    if isinstance(exc, httpx.TransportError):
        return True
    if isinstance(exc, Conflict):
        return True
    return isinstance(exc, ServiceError) and exc.status_code >= 500

class UploadClientDriver:
    def __init__(
        self,
        client: httpx.AsyncClient,
        *,
        storage_client: httpx.AsyncClient | None = None,
        chunk_size: int | None = None,
        multipart_enabled: bool | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        api_prefix: str | None = None,
    ):
        # presigned destinations must not receive the API's auth headers
        self.client = client
        self.storage_client = storage_client or client
        self.chunk_size = chunk_size or settings.CHUNK_SIZE_BYTES
        self.multipart_enabled = settings.MULTIPART_ENABLED if multipart_enabled is None else multipart_enabled
        self.max_retries = settings.UPLOAD_MAX_RETRIES if max_retries is None else max_retries
        self.retry_backoff = settings.UPLOAD_RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self.api_prefix = (settings.API_PREFIX if api_prefix is None else api_prefix).rstrip("/")

    # ---- API calls ----

    async def _api(self, method: str, path: str, **kwargs) -> Any:
        response = await self.client.request(method, f"{self.api_prefix}{path}", **kwargs)
        _raise_for_error(response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def _put(self, destination: dict, data: bytes, content_type: str) -> str:
        response = await self.storage_client.request(
            destination.get("method", "PUT"),
            destination["url"],
            content=data,
            headers={"content-type": content_type},
        )
        _raise_for_error(response)
        if destination.get("storage_id"):
            return destination["storage_id"]
        return response.json()["storage_id"]

    async def _with_retries(self, what: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        attempt = 0
        while True:
            try:
                return await fn()
            except Exception as e:
                if not _retriable(e) or attempt >= self.max_retries:
                    logger.error("%s failed after %d attempt(s): %s", what, attempt + 1, e)
                    raise
                attempt += 1
                logger.warning("%s failed (%s); retry %d/%d in %.1fs", what, e, attempt, self.max_retries, self.retry_backoff)
                await asyncio.sleep(self.retry_backoff)

    # ---- Upload paths ----

    async def upload_file(self, path: str | Path, content_type: str | None = None) -> UploadResult:
        path = Path(path)
        content_type = content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        size = path.stat().st_size
        if size <= self.chunk_size or not self.multipart_enabled:
            logger.info("Uploading %s (%d bytes) in one request", path.name, size)
            storage_id = await self._upload_single(path.read_bytes(), content_type)
            return UploadResult(storage_id=storage_id, size=size, num_chunks=0)
        return await self._upload_chunked(path, size, content_type)

    async def _upload_single(self, data: bytes, content_type: str) -> str:
        async def attempt():
            destination = await self._api("POST", "/storage/upload-url", params={"content_type": content_type})
            return await self._put(destination, data, content_type)
        return await self._with_retries("Single-shot upload", attempt)

    async def _upload_chunked(self, path: Path, size: int, content_type: str) -> UploadResult:
        num_chunks = math.ceil(size / self.chunk_size)
        logger.info("Uploading %s (%d bytes) in %d chunks of %d bytes", path.name, size, num_chunks, self.chunk_size)
        init = await self._api("POST", "/uploads", json={"num_chunks": num_chunks})
        upload_id = init["upload_id"]

        first_storage_id = None
        with path.open("rb") as fh:
            for index in range(num_chunks):
                fh.seek(index * self.chunk_size)
                data = fh.read(self.chunk_size)
                storage_id = await self._upload_chunk(upload_id, index, data, content_type)
                if index == 0:
                    first_storage_id = storage_id
                logger.debug("Chunk %d/%d uploaded", index + 1, num_chunks)

        done = await self._api(
            "POST", f"/uploads/{upload_id}/complete",
            json={"content_type": content_type, "first_chunk_storage_id": first_storage_id},
        )
        logger.info("Upload %s assembled into %s", path.name, done["storage_id"])
        return UploadResult(storage_id=done["storage_id"], size=size, num_chunks=num_chunks, upload_id=upload_id)

    async def _upload_chunk(self, upload_id: str, index: int, data: bytes, content_type: str) -> str:
        # once the bytes have landed, a retry only repeats the (idempotent) record call
        state: dict = {"chunk_id": None, "storage_id": None}

        async def attempt():
            if state["storage_id"] is None:
                slot = await self._api("POST", f"/uploads/{upload_id}/chunks/{index}/slot")
                state["chunk_id"] = slot["chunk_id"]
                state["storage_id"] = await self._put(slot["destination"], data, content_type)
            await self._api("POST", f"/uploads/chunks/{state['chunk_id']}/stored", json={"storage_id": state["storage_id"]})
            return state["storage_id"]

        return await self._with_retries(f"Chunk {index}", attempt)

    async def upload_media(self, path: str | Path, *, name: str | None = None, content_type: str | None = None, description: str | None = None) -> dict:
        """Upload a file and register it as a media record, which queues its transcription."""
        path = Path(path)
        content_type = content_type or mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        if not (content_type.startswith("audio/") or content_type.startswith("video/")):
            raise ValueError("Only audio and video files are supported")
        result = await self.upload_file(path, content_type)
        media = await self._api("POST", "/media", json={
            "name": name or path.name,
            "storage_id": result.storage_id,
            "size_bytes": result.size,
            "mime_type": content_type,
            "description": description or f"Media file of type {content_type.split('/')[0]}",
        })
        logger.info("Media %s registered; transcription queued", media["id"])
        return media

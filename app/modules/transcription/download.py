import logging
from pathlib import Path
from typing import Callable

import httpx

from app.core.errors import DownloadFailure

logger = logging.getLogger(__name__)

ClientFactory = Callable[..., httpx.AsyncClient]

class MediaDownloader:
    """
    Fetches a media object by URL into a local scratch file.

    Assembled multipart objects are streamed to disk in fixed-size pieces;
    single-shot objects (at most one chunk) are fetched in one response.
    """
    def __init__(self, client_factory: ClientFactory = httpx.AsyncClient, *, timeout: float = 300.0, chunk_bytes: int = 1024 * 1024):
        self.client_factory = client_factory
        self.timeout = timeout
        self.chunk_bytes = chunk_bytes

    async def download(self, url: str, dest: Path, *, stream: bool = False) -> int:
        written = 0
        try:
            async with self.client_factory(timeout=self.timeout, follow_redirects=True) as client:
                if stream:
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        with dest.open("wb") as fh:
                            async for chunk in response.aiter_bytes(self.chunk_bytes):
                                fh.write(chunk)
                                written += len(chunk)
                else:
                    response = await client.get(url)
                    response.raise_for_status()
                    dest.write_bytes(response.content)
                    written = len(response.content)
        except httpx.HTTPStatusError as e:
            raise DownloadFailure(f"Download failed with HTTP {e.response.status_code}") from e
        except httpx.HTTPError as e:
            raise DownloadFailure(f"Download failed: {e!r}") from e
        except OSError as e:
            raise DownloadFailure(f"Could not write {dest.name}: {e}") from e
        logger.info("Downloaded %d bytes to %s (stream=%s)", written, dest.name, stream)
        return written

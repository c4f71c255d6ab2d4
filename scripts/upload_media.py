import argparse
import asyncio
import json
import logging
import os
import sys

import httpx

from app.core.config import settings
from app.core.logging import setup_logging
from app.clients.upload_driver import UploadClientDriver

async def main(args) -> int:
    headers = {"authorization": f"Bearer {args.token}"} if args.token else {}
    async with httpx.AsyncClient(base_url=args.base_url, headers=headers, timeout=args.timeout) as api, \
            httpx.AsyncClient(timeout=args.timeout) as storage:
        driver = UploadClientDriver(api, storage_client=storage, chunk_size=args.chunk_size)
        if args.no_media:
            result = await driver.upload_file(args.path, args.content_type)
            print(json.dumps({"storage_id": result.storage_id, "size": result.size, "num_chunks": result.num_chunks}))
        else:
            media = await driver.upload_media(args.path, content_type=args.content_type, description=args.description)
            print(json.dumps(media, indent=2))
    return 0

if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Upload an audio/video file and queue its transcription")
    parser.add_argument("path")
    parser.add_argument("--base-url", default=settings.PUBLIC_BASE_URL)
    parser.add_argument("--token", default=os.environ.get("TRANSCRIBE_TOKEN"))
    parser.add_argument("--content-type", default=None)
    parser.add_argument("--description", default=None)
    parser.add_argument("--chunk-size", type=int, default=settings.CHUNK_SIZE_BYTES)
    parser.add_argument("--timeout", type=float, default=120.0)
    parser.add_argument("--no-media", action="store_true", help="only upload the bytes, do not register a media record")
    setup_logging()
    try:
        sys.exit(asyncio.run(main(parser.parse_args())))
    except Exception as e:
        logging.getLogger("upload_media").error("Upload failed: %s", e)
        sys.exit(1)

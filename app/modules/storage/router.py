import asyncio
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import FileResponse
from app.api.deps import get_storage
from app.core.security import require_scopes
from app.platform.adapters.storage_local import LocalFilesystemStorage

router = APIRouter()

def local_storage(storage=Depends(get_storage)) -> LocalFilesystemStorage:
    # the byte routes stand in for presigned URLs and exist only for the local provider
    if not isinstance(storage, LocalFilesystemStorage):
        raise HTTPException(status_code=404, detail="Not available for this storage provider")
    return storage

@router.post("/upload-url", dependencies=[Depends(require_scopes("media:write"))])
async def generate_upload_url(content_type: str | None = None, storage=Depends(get_storage)):
    """Single-use upload destination for a file that fits in one request."""
    return storage.generate_upload_url(content_type)

@router.put("/upload/{token}")
async def accept_upload(token: str, request: Request, storage: LocalFilesystemStorage = Depends(local_storage)):
    data = await request.body()
    storage_id = await asyncio.to_thread(storage.accept_upload, token, data, request.headers.get("content-type"))
    if storage_id is None:
        raise HTTPException(status_code=404, detail="Unknown or already used upload token")
    return {"storage_id": storage_id}

@router.get("/objects/{storage_id}")
async def get_object(storage_id: str, storage: LocalFilesystemStorage = Depends(local_storage)):
    path = storage.path_of(storage_id)
    if path is None:
        raise HTTPException(status_code=404, detail="Object not found")
    return FileResponse(path, media_type=storage.content_type(storage_id))

from fastapi import APIRouter
from app.modules.uploads.router import router as uploads_router
from app.modules.storage.router import router as storage_router
from app.modules.media.router import router as media_router

api_router = APIRouter()
api_router.include_router(uploads_router, prefix="/uploads", tags=["uploads"])
api_router.include_router(storage_router, prefix="/storage", tags=["storage"])
api_router.include_router(media_router, prefix="/media", tags=["media"])

@api_router.get("/health", tags=["health"])
async def health():
    return {"status": "ok"}

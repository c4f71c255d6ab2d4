from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from .config import settings
from .base import Base

def make_engine(url: str) -> AsyncEngine:
    if url.startswith("sqlite"):
        return create_async_engine(url, connect_args={"timeout": 30})
    return create_async_engine(url, pool_pre_ping=True)

def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)

engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_sessionmaker(engine)

async def init_models(bind: AsyncEngine | None = None):
    ## In dev-only "create_all" mode create tables on startup; otherwise, migrations own the schema.
    if settings.DB_MANAGE.lower() != "create_all":
        return
    # register every model on the metadata
    from app.modules.media import models as _media  # noqa: F401
    from app.modules.uploads import models as _uploads  # noqa: F401
    from app.modules.transcription import models as _transcription  # noqa: F401
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

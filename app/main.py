import time
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from dotenv import load_dotenv

# Load environment variables from .env file before anything else
load_dotenv()

from app.core.config import settings
from app.core.logging import setup_logging, request_id_ctx
from app.core.db import SessionLocal, engine as default_engine, init_models
from app.core.errors import ServiceError
from app.api.router import api_router
from app.platform.provider_registry import ProviderRegistry
from app.modules.transcription.orchestrator import TranscriptionOrchestrator
from app.modules.transcription.worker import TranscriptionWorker

logger = logging.getLogger(__name__)

def create_app(providers: ProviderRegistry | None = None, *, session_factory=None, engine=None, run_worker: bool = True) -> FastAPI:
    setup_logging()
    providers = providers or ProviderRegistry(settings)
    session_factory = session_factory or SessionLocal
    engine = engine or default_engine
    cfg = providers.settings

    app = FastAPI(title=cfg.APP_NAME)

    app.state.providers = providers
    app.state.session_factory = session_factory
    app.state.storage = providers.object_storage()
    app.state.event_bus = providers.event_bus()
    app.state.orchestrator = TranscriptionOrchestrator(
        session_factory,
        app.state.storage,
        primary=providers.primary_engine(),
        fallback=providers.fallback_engine(),
        transcoder=providers.transcoder(),
        downloader=providers.downloader(),
        event_bus=app.state.event_bus,
        scratch_dir=cfg.SCRATCH_DIR,
        step_max_attempts=cfg.STEP_MAX_ATTEMPTS,
        step_backoff_seconds=cfg.STEP_RETRY_BACKOFF_SECONDS,
    )
    app.state.worker = TranscriptionWorker(
        session_factory,
        app.state.orchestrator,
        max_concurrency=cfg.MAX_CONCURRENT_RUNS,
        poll_interval=cfg.RUN_POLL_INTERVAL_SECONDS,
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.time()

        response = await call_next(request)

        process_time = (time.time() - start_time) * 1000
        formatted_process_time = f"{process_time:.2f}ms"

        logger.info(
            f"Request: {request.method} {request.url.path} - Response: {response.status_code} - Time: {formatted_process_time}"
        )

        return response

    # registered last so it runs first and the timing log carries the id
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        rid = request.headers.get("x-request-id", "-")
        token = request_id_ctx.set(rid)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx.reset(token)
        return response

    @app.exception_handler(ServiceError)
    async def service_error_handler(request: Request, exc: ServiceError):
        logger.info(f"{request.method} {request.url.path} -> {exc.status_code} {exc.code}: {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        logger.critical(f"Unhandled exception for request {request.method} {request.url.path}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"code": "INTERNAL", "message": "An internal server error occurred."},
        )

    @app.on_event("startup")
    async def on_startup():
        await init_models(engine)
        if run_worker:
            await app.state.worker.start()

    @app.on_event("shutdown")
    async def on_shutdown():
        await app.state.worker.stop()
        close = getattr(app.state.event_bus, "close", None)
        if close is not None:
            await close()

    app.include_router(api_router, prefix=cfg.API_PREFIX)
    return app

app = create_app()

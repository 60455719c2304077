from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from taletree.api.v1.router import api_router
from taletree.core.exceptions import (
    BibleAlreadyExistsError,
    ConfigurationError,
    EntityNotFoundError,
    GenerationError,
    NodeAlreadyFilledError,
    NodeBusyError,
)
from taletree.core.logging import configure_logging
from taletree.core.metrics import get_metrics_payload
from taletree.core.request_context import reset_request_id, set_request_id
from taletree.core.settings import settings
from taletree.db.base import Base
from taletree.db.session import get_engine, init_engine
from taletree.pipeline.expansion import process_story
from taletree.pipeline.media import media_fanout
from taletree.services import job_queue


logger = logging.getLogger("taletree")


def _is_polling_request(method: str, path: str) -> bool:
    if method != "GET":
        return False
    if path.startswith("/v1/stories/") and path.endswith("/generation-status"):
        return True
    return path in ("/health", "/metrics")


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_file)
    init_engine(settings.database_url)

    if settings.db_auto_create and settings.database_url.startswith("sqlite"):
        engine = get_engine()
        Base.metadata.create_all(bind=engine)

    await job_queue.start_worker(process_story)
    job_queue.recover_pending()
    try:
        yield
    finally:
        await job_queue.stop_worker()
        await media_fanout.drain(timeout=settings.shutdown_grace_seconds)


app = FastAPI(title="taletree", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.mount(
    settings.media_url_prefix,
    StaticFiles(directory=settings.media_root, check_dir=False),
    name="media",
)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
    request.state.request_id = request_id
    token = set_request_id(request_id)
    start = time.perf_counter()
    try:
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_failed",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "duration_ms": duration_ms,
                },
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        request_logger = logger.debug if _is_polling_request(request.method, request.url.path) else logger.info
        request_logger(
            "request_complete",
            extra={
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        response.headers["x-request-id"] = request_id
        return response
    finally:
        reset_request_id(token)


def _error_response(request: Request, status_code: int, detail: str) -> JSONResponse:
    request_id = getattr(request.state, "request_id", None)
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "request_id": request_id},
    )


@app.exception_handler(EntityNotFoundError)
async def not_found_handler(request: Request, exc: EntityNotFoundError):
    return _error_response(request, 404, exc.detail)


@app.exception_handler(NodeBusyError)
async def node_busy_handler(request: Request, exc: NodeBusyError):
    return _error_response(request, 409, exc.detail)


@app.exception_handler(NodeAlreadyFilledError)
async def node_filled_handler(request: Request, exc: NodeAlreadyFilledError):
    return _error_response(request, 409, exc.detail)


@app.exception_handler(BibleAlreadyExistsError)
async def bible_exists_handler(request: Request, exc: BibleAlreadyExistsError):
    return _error_response(request, 409, exc.detail)


@app.exception_handler(GenerationError)
async def generation_error_handler(request: Request, exc: GenerationError):
    logger.warning("generation_error", extra={"error_type": type(exc).__name__, "error": str(exc)})
    return _error_response(request, 502, exc.detail)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return _error_response(request, 503, exc.detail)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return _error_response(request, 400, str(exc))


@app.exception_handler(RuntimeError)
async def runtime_error_handler(request: Request, exc: RuntimeError):
    return _error_response(request, 502, str(exc))


@app.get("/health")
def health():
    return {"status": "ok", "workers_running": job_queue.is_running()}


@app.get("/metrics")
def metrics_endpoint():
    return PlainTextResponse(get_metrics_payload(), media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(api_router)

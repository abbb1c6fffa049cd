"""FastAPI application setup for DocChat."""

from __future__ import annotations

import time

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from docchat.api.dependencies import (
    get_app_settings,
    get_chat_service,
    get_database,
    get_quiz_generator,
    get_rate_limiter,
    get_scheduler,
    shutdown_dependencies,
)
from docchat.api.routes_admin import router as admin_router
from docchat.api.routes_chat import router as chat_router
from docchat.api.routes_ingest import router as ingest_router
from docchat.api.routes_quiz import router as quiz_router
from docchat.chat.service import SessionRateLimited
from docchat.core.errors import (
    AccessDeniedError,
    NotFoundError,
    OperationTimeoutError,
    ProcessingError,
    RateLimitError,
    ValidationError,
)
from docchat.core.logging import bind_context, configure_logging, get_logger, log_context
from docchat.core.metrics import REQUEST_COUNT, REQUEST_LATENCY
from docchat.quiz.generator import QuizRegenerationLimited
from docchat.utils.ids import new_id

configure_logging()
logger = get_logger(__name__)

app = FastAPI(
    title="DocChat",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://127.0.0.1:5173",
        "http://localhost:5173",
    ],
    allow_credentials=True,
    allow_methods=['*'],
    allow_headers=['*'],
)

app.include_router(ingest_router, prefix="/documents", tags=["documents"])
app.include_router(chat_router, prefix="/chat", tags=["chat"])
app.include_router(quiz_router, prefix="/quiz", tags=["quiz"])
app.include_router(admin_router, prefix="", tags=["admin"])


def error_status(error: ProcessingError) -> int:
    if isinstance(error, SessionRateLimited):
        return 429
    if isinstance(error, RateLimitError):
        # Ingest capacity; the service itself is busy.
        return 503
    if isinstance(error, NotFoundError):
        return 404
    if isinstance(error, AccessDeniedError):
        return 403
    if isinstance(error, QuizRegenerationLimited):
        return 409
    if isinstance(error, ValidationError):
        return 400
    if isinstance(error, OperationTimeoutError):
        return 504
    return 502


@app.exception_handler(ProcessingError)
async def processing_error_handler(request: Request, exc: ProcessingError) -> JSONResponse:
    status = error_status(exc)
    headers = {}
    if exc.retry_after is not None:
        headers["Retry-After"] = str(int(exc.retry_after))
    if status >= 500:
        logger.error(
            "Request failed: %s",
            exc.message,
            extra=log_context(path=request.url.path, kind=exc.kind.value, status=status),
        )
    return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


@app.middleware("http")
async def record_metrics(request: Request, call_next):
    started = time.perf_counter()
    request_id = request.headers.get("x-request-id") or new_id("req")
    with bind_context(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    # Label by route template so document slugs do not multiply series.
    route = request.scope.get("route")
    endpoint = getattr(route, "path", "unmatched")
    REQUEST_LATENCY.labels(endpoint=endpoint, method=request.method).observe(time.perf_counter() - started)
    REQUEST_COUNT.labels(endpoint=endpoint, method=request.method, status=str(response.status_code)).inc()
    return response


@app.on_event("startup")
async def startup() -> None:
    """Warm up core singletons and start background sweeps."""
    settings = get_app_settings()
    configure_logging(settings.log_level, settings.log_format)
    get_database()
    get_scheduler()
    get_quiz_generator()
    get_chat_service()
    get_rate_limiter().start()


@app.on_event("shutdown")
async def shutdown() -> None:
    await shutdown_dependencies()


@app.get("/health", tags=["admin"])
def health() -> dict[str, bool]:
    """Simple liveness check."""
    return {"ok": True}

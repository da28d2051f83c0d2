from contextlib import asynccontextmanager
import logging
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles

from comicgen.api.v1.router import api_router
from comicgen.core.exceptions import (
    AppError,
    ConfigurationError,
    FallbackExhaustedError,
    FirstPageFatalError,
    RateLimitExceededError,
    RenderFailedError,
    StructuralValidationError,
)
from comicgen.core.logging import configure_logging
from comicgen.core.metrics import get_metrics_payload
from comicgen.core.request_context import reset_request_id, set_request_id
from comicgen.core.settings import settings
from comicgen.core.telemetry import setup_telemetry


logger = logging.getLogger("comicgen")

INTERNAL_ERROR_MESSAGE = "Internal server error"

# Checked in order; first matching class wins.
_ERROR_STATUS: list[tuple[type[AppError], int, str | None]] = [
    (RateLimitExceededError, 429, None),
    (StructuralValidationError, 422, None),
    (FallbackExhaustedError, 503, None),
    (FirstPageFatalError, 502, None),
    (RenderFailedError, 502, "No page could be generated"),
    (ConfigurationError, 500, "Service is not configured"),
]


def _is_polling_request(method: str, path: str) -> bool:
    return method == "GET" and path in {"/health", "/metrics"}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging(settings.log_level, settings.log_file)
    logger.info("startup default_image_model=%s storage=%s", settings.default_image_model, settings.storage_backend)
    yield


app = FastAPI(title="comicgen", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:3000",
        "http://127.0.0.1:3000",
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

setup_telemetry(app, endpoint=settings.otel_endpoint, service_name=settings.otel_service_name)


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


def _error_response(request: Request, exc: Exception, status_code: int, detail: str) -> JSONResponse:
    error_id = str(uuid.uuid4())
    request_id = getattr(request.state, "request_id", None)
    logger.error(
        "api_error",
        exc_info=exc if status_code >= 500 else None,
        extra={
            "error_id": error_id,
            "error_class": type(exc).__name__,
            "error": str(exc),
            "status": status_code,
            "path": request.url.path,
        },
    )
    headers = {}
    if request_id:
        headers["x-request-id"] = request_id
    if isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=status_code,
        content={"detail": detail, "error_id": error_id, "request_id": request_id},
        headers=headers,
    )


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    for error_cls, status_code, message in _ERROR_STATUS:
        if isinstance(exc, error_cls):
            return _error_response(request, exc, status_code, message or exc.detail)
    return _error_response(request, exc, 500, INTERNAL_ERROR_MESSAGE)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    return _error_response(request, exc, 500, INTERNAL_ERROR_MESSAGE)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/metrics")
def metrics_endpoint():
    return PlainTextResponse(get_metrics_payload(), media_type="text/plain; version=0.0.4; charset=utf-8")


app.include_router(api_router)

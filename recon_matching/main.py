"""Reconciliation Matching Service - FastAPI Application."""

import time
import traceback
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any
from uuid import uuid4

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from recon_matching import __version__
from recon_matching.config import settings
from recon_matching.database import init_db
from recon_matching.logger import configure_logging, get_logger, log_exception
from recon_matching.routers import matching, rules
from recon_matching.services.errors import MatchingError
from recon_matching.services.strategies import load_scoring_config
from recon_matching.utils.exceptions import ERROR_KIND_STATUS

# Initialize logging early
configure_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan - init store and scoring config on startup."""
    await init_db()
    scoring = load_scoring_config(force_reload=True)
    logger.info(
        "Application started",
        version=__version__,
        store_backend=settings.store_backend,
        fuzzy_threshold=scoring.fuzzy_threshold,
    )
    yield
    logger.info("Application shutting down")


app = FastAPI(
    title="Reconciliation Matching API",
    description="Transaction matching, match review and matching rule management",
    version=__version__,
    lifespan=lifespan,
)
# Probe endpoints are logged at debug so they do not drown request logs
QUIET_PATHS = frozenset({"/health"})


@app.middleware("http")
async def logging_middleware(request: Request, call_next: Any) -> Response:
    """Bind a request id for every log line of the request and log the outcome."""
    request_id = request.headers.get("X-Request-ID", str(uuid4()))

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(
        request_id=request_id,
        method=request.method,
        path=request.url.path,
    )

    started = time.perf_counter()
    try:
        response = await call_next(request)
    except Exception as exc:
        log_exception(logger, exc, "HTTP request failed", duration_ms=_elapsed_ms(started))
        raise

    log = logger.debug if request.url.path in QUIET_PATHS else logger.info
    log("HTTP request", status_code=response.status_code, duration_ms=_elapsed_ms(started))
    response.headers["X-Request-ID"] = request_id
    return response


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 2)


@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError) -> JSONResponse:
    """Matching errors that escape a router keep the same body as the router-mapped ones."""
    logger.warning("Unhandled matching error", kind=exc.kind.value, error=exc.message)
    return JSONResponse(
        status_code=ERROR_KIND_STATUS.get(exc.kind, 400),
        content={"detail": jsonable_encoder({"kind": exc.kind.value, "message": exc.message, "details": exc.details})},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything else becomes a JSON 500; details only in debug."""
    request_id = structlog.contextvars.get_contextvars().get("request_id")
    if settings.debug:
        detail = str(exc)
        trace = "".join(traceback.format_exception(exc))
    else:
        detail = "An internal server error occurred. Please try again later."
        trace = None

    return JSONResponse(
        status_code=500,
        content={"detail": detail, "trace": trace, "request_id": request_id},
    )


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type", "X-Request-ID"],
)

app.include_router(matching.router)
app.include_router(rules.router)


@app.get("/health")
async def health_check() -> dict[str, str]:
    """Liveness probe."""
    return {"status": "ok", "store_backend": settings.store_backend, "version": __version__}

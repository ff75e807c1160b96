"""Structured logging setup.

structlog renders through stdlib logging: console output in debug, JSON
otherwise. Batch runs bind a ``run_id`` so every line a run emits (including
lines from worker threads) can be correlated.
"""

import logging
import sys
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any
from uuid import uuid4

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import Processor

from recon_matching.config import settings

# Libraries that log every statement at INFO
NOISY_LOGGERS = ("sqlalchemy.engine", "httpx", "asyncio")


def _build_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def _select_renderer() -> Processor:
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Route structlog and stdlib logging through one stdout handler."""
    processors = _build_processors()

    structlog.configure(
        processors=processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=_select_renderer(), foreign_pre_chain=processors)
    )
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)

    if not settings.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def bind_run(kind: str, **context: Any) -> Iterator[str]:
    """Bind a fresh ``run_id`` (plus ``kind``/context) for the duration of a batch run.

    Worker threads started with ``asyncio.to_thread`` copy the context, so
    partition logs carry the same id.
    """
    run_id = uuid4().hex[:12]
    tokens = structlog.contextvars.bind_contextvars(run_id=run_id, run_kind=kind, **context)
    try:
        yield run_id
    finally:
        structlog.contextvars.reset_contextvars(**tokens)


# =============================================================================
# Timing
# =============================================================================


def _log_duration(
    log: BoundLogger,
    level: str,
    operation: str,
    started: float,
    context: dict[str, Any],
    result_context: dict[str, Any],
) -> None:
    result_context["duration_ms"] = round((time.perf_counter() - started) * 1000, 2)
    extra = {key: value for key, value in result_context.items() if key != "duration_ms"}
    getattr(log, level, log.info)(
        f"{operation} completed",
        operation=operation,
        duration_ms=result_context["duration_ms"],
        **context,
        **extra,
    )


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Log how long the block took.

    The yielded dict collects extra fields to log; ``duration_ms`` is added on exit.

        with log_timing("score_partition", logger=logger, partition=key) as ctx:
            ctx["proposals"] = len(proposals)
    """
    result_context: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield result_context
    finally:
        _log_duration(logger or get_logger(__name__), level, operation, started, context, result_context)


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Async form of :func:`log_timing`."""
    result_context: dict[str, Any] = {}
    started = time.perf_counter()
    try:
        yield result_context
    finally:
        _log_duration(logger or get_logger(__name__), level, operation, started, context, result_context)


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log ``exc`` with its type and module alongside ``extra``."""
    fields: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }
    log_method = getattr(logger, level, logger.error)
    if include_traceback:
        log_method(context, exc_info=exc, **fields)
    else:
        log_method(context, **fields)

"""Test fixtures and configuration."""

import logging
import os
import sys

import pytest
import pytest_asyncio
import structlog
from httpx import ASGITransport, AsyncClient

# Tests always run against the in-process store unless a test opts into SQL
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ["ENVIRONMENT"] = "testing"

from recon_matching.services.store import InMemoryMatchStore  # noqa: E402
from recon_matching.services.strategies import load_scoring_config  # noqa: E402


# --- Structlog Configuration for Tests ---
@pytest.fixture(autouse=True, scope="session")
def configure_structlog_for_tests():
    """Configure structlog for proper capsys capture in tests."""
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
    ]

    structlog.configure(
        processors=processors,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=processors[:-1],
    )

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG)

    yield

    structlog.reset_defaults()


@pytest.fixture(autouse=True)
def reset_scoring_config(monkeypatch):
    """Make every test start from config/matching.yaml without env overrides."""
    monkeypatch.delenv("MATCHING_FUZZY_THRESHOLD", raising=False)
    monkeypatch.delenv("MATCHING_DATE_WINDOW_DAYS", raising=False)
    load_scoring_config(force_reload=True)
    yield
    load_scoring_config(force_reload=True)


@pytest.fixture
def store() -> InMemoryMatchStore:
    return InMemoryMatchStore()


@pytest_asyncio.fixture
async def client(store):
    """HTTP client bound to the app with the store dependency overridden."""
    from recon_matching.database import get_store
    from recon_matching.main import app

    async def override_store():
        yield store

    app.dependency_overrides[get_store] = override_store
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client
    app.dependency_overrides.pop(get_store, None)

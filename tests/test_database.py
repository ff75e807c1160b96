"""Tests for store selection and database init."""

import pytest

from recon_matching import database
from recon_matching.services.sql_store import SqlMatchStore
from recon_matching.services.store import InMemoryMatchStore


@pytest.mark.asyncio
async def test_get_store_memory_backend_is_shared(monkeypatch) -> None:
    monkeypatch.setattr(database.settings, "store_backend", "memory")

    first = [store async for store in database.get_store()]
    second = [store async for store in database.get_store()]

    assert isinstance(first[0], InMemoryMatchStore)
    assert first[0] is second[0]


@pytest.mark.asyncio
async def test_get_store_sql_backend_wraps_session(monkeypatch) -> None:
    sentinel = object()

    async def fake_get_db():
        yield sentinel

    monkeypatch.setattr(database.settings, "store_backend", "sql")
    monkeypatch.setattr(database, "get_db", fake_get_db)

    stores = [store async for store in database.get_store()]

    assert len(stores) == 1
    assert isinstance(stores[0], SqlMatchStore)
    assert stores[0].session is sentinel


@pytest.mark.asyncio
async def test_init_db_skips_memory_backend(monkeypatch) -> None:
    monkeypatch.setattr(database.settings, "store_backend", "memory")

    def fail():
        raise AssertionError("engine should not be created")

    monkeypatch.setattr(database, "get_engine", fail)
    await database.init_db()

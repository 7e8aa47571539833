from contextlib import asynccontextmanager

import psycopg
import pytest

from app.db import helpers
from app.db.helpers import DatabaseError, StoreUnavailable, fetch_all, fetch_one, with_db_retry
from app.db.pool import PoolUnavailableError


class FailingPool:
    def __init__(self, error: Exception):
        self.error = error

    @asynccontextmanager
    async def connection(self):
        raise self.error
        yield


@pytest.mark.asyncio
async def test_pool_unavailable_maps_to_store_unavailable():
    with pytest.raises(StoreUnavailable) as exc_info:
        await fetch_one(FailingPool(PoolUnavailableError("pool closed")), "SELECT 1")

    assert exc_info.value.recoverable is True
    assert exc_info.value.operation == "fetch_one"


@pytest.mark.asyncio
async def test_operational_error_maps_to_store_unavailable():
    with pytest.raises(StoreUnavailable):
        await fetch_all(FailingPool(psycopg.OperationalError("server closed the connection")), "SELECT 1")


@pytest.mark.asyncio
async def test_integrity_error_is_not_recoverable():
    with pytest.raises(DatabaseError) as exc_info:
        await fetch_all(FailingPool(psycopg.IntegrityError("duplicate key")), "INSERT ...")

    assert not isinstance(exc_info.value, StoreUnavailable)
    assert exc_info.value.recoverable is False


@pytest.mark.asyncio
async def test_with_db_retry_retries_store_unavailable(monkeypatch):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    monkeypatch.setattr(helpers.asyncio, "sleep", fake_sleep)
    calls = {"count": 0}

    @with_db_retry(max_retries=3, base_delay=0.1)
    async def flaky():
        calls["count"] += 1
        if calls["count"] < 3:
            raise StoreUnavailable("down")
        return "ok"

    assert await flaky() == "ok"
    assert sleeps == [0.1, 0.2]


@pytest.mark.asyncio
async def test_with_db_retry_does_not_retry_other_errors():
    calls = {"count": 0}

    @with_db_retry(max_retries=3, base_delay=0)
    async def broken():
        calls["count"] += 1
        raise DatabaseError("syntax error", recoverable=False)

    with pytest.raises(DatabaseError):
        await broken()

    assert calls["count"] == 1

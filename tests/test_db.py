"""
Database layer tests - circuit breaker, shutdown flag and query error mapping.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rosterbot import db
from rosterbot.db import CircuitBreaker, DBQueryError, run_db_query

@pytest.fixture(autouse=True)
def reset_db_state():
    db.set_shutting_down(False)
    db.db_circuit_breaker.record_success()
    yield
    db.set_shutting_down(False)
    db.db_circuit_breaker.record_success()

class TestCircuitBreaker:

    def test_opens_after_threshold(self):
        cb = CircuitBreaker(failure_threshold=2, timeout=60)
        cb.record_failure()
        assert not cb.is_open()
        cb.record_failure()
        assert cb.is_open()

    def test_half_open_after_timeout(self):
        cb = CircuitBreaker(failure_threshold=1, timeout=10)
        with patch("rosterbot.db.time.monotonic", return_value=100.0):
            cb.record_failure()
        with patch("rosterbot.db.time.monotonic", return_value=111.0):
            assert not cb.is_open()
        assert cb.state == "HALF_OPEN"
        cb.record_success()
        assert cb.state == "CLOSED"

    def test_default_threshold(self):
        assert CircuitBreaker().failure_threshold == 5

def fake_pool(cursor):
    conn = MagicMock()
    conn.cursor.return_value.__aenter__ = AsyncMock(return_value=cursor)
    conn.cursor.return_value.__aexit__ = AsyncMock(return_value=False)
    conn.commit = AsyncMock()
    pool = MagicMock()
    pool.acquire = AsyncMock(return_value=conn)
    pool.release = AsyncMock()
    return pool, conn

class TestRunDbQuery:

    @pytest.mark.asyncio
    async def test_refused_during_shutdown(self):
        db.set_shutting_down(True)
        with pytest.raises(DBQueryError, match="shutdown"):
            await run_db_query("SELECT 1")

    @pytest.mark.asyncio
    async def test_refused_when_circuit_open(self):
        with patch.object(db.db_circuit_breaker, "is_open", return_value=True):
            with pytest.raises(DBQueryError, match="circuit breaker"):
                await run_db_query("SELECT 1")

    @pytest.mark.asyncio
    async def test_pool_not_initialized(self):
        with patch.object(db, "db_pool", None), patch("rosterbot.db.config.get_db_timeout", return_value=5):
            with pytest.raises(DBQueryError, match="not initialized"):
                await run_db_query("SELECT 1")

    @pytest.mark.asyncio
    async def test_fetch_one(self):
        cursor = MagicMock()
        cursor.execute = AsyncMock()
        cursor.fetchone = AsyncMock(return_value=("1",))
        pool, conn = fake_pool(cursor)

        with patch.object(db, "db_pool", pool), patch("rosterbot.db.config.get_db_timeout", return_value=5):
            result = await run_db_query("SELECT x FROM t WHERE id = %s", ("1",), fetch_one=True)

        assert result == ("1",)
        cursor.execute.assert_awaited_once_with("SELECT x FROM t WHERE id = %s", ("1",))
        pool.release.assert_awaited_once_with(conn)

    @pytest.mark.asyncio
    async def test_operational_error_maps_to_dbqueryerror(self):
        cursor = MagicMock()
        cursor.execute = AsyncMock(side_effect=db.OperationalError(2003, "gone"))
        pool, _ = fake_pool(cursor)

        with patch.object(db, "db_pool", pool), patch("rosterbot.db.config.get_db_timeout", return_value=5):
            with pytest.raises(DBQueryError, match="connection error"):
                await run_db_query("SELECT 1")
        assert db.db_circuit_breaker.failure_count == 1

class TestMaskQuery:

    def test_values_are_hidden(self):
        masked = db._mask_query("SELECT * FROM t WHERE id IN (1, 2) AND n = 'secret'", 200)
        assert "secret" not in masked
        assert "IN(...)" in masked

"""Shared fixtures for the history-sync test suite."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from helpers import AsyncContext, InMemoryLedger


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def mock_conn():
    conn = MagicMock()
    conn.fetchrow = AsyncMock(return_value=None)
    conn.fetch = AsyncMock(return_value=[])
    conn.fetchval = AsyncMock(return_value=0)
    conn.execute = AsyncMock(return_value="OK")
    conn.executemany = AsyncMock(return_value=None)
    conn.tx = AsyncContext()
    conn.transaction = MagicMock(return_value=conn.tx)
    return conn


@pytest.fixture
def mock_pool(mock_conn):
    pool = MagicMock()
    pool.fetchrow = AsyncMock(return_value=None)
    pool.fetch = AsyncMock(return_value=[])
    pool.fetchval = AsyncMock(return_value=0)
    pool.execute = AsyncMock(return_value="OK")
    pool.acquire = MagicMock(side_effect=lambda: AsyncContext(mock_conn))
    pool.close = AsyncMock()
    return pool

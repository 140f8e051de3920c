"""Shared fixtures and fakes for the test suite."""

import secrets

import pytest
import pytest_asyncio
from web3 import Web3

from database import init_db, get_pool, close as close_db


def random_address() -> str:
    """A fresh checksum address, so tests never share signers or items."""
    return Web3.to_checksum_address('0x' + secrets.token_hex(20))


def random_tx_hash() -> str:
    return '0x' + secrets.token_hex(32)


class FakeTransaction:
    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeConnection:
    """Records statements and answers fetches from a queue of canned rows."""

    def __init__(self, rows=None):
        self.executed = []
        self.rows = list(rows or [])

    async def execute(self, query, *args):
        self.executed.append((query, args))
        return 'OK'

    async def executemany(self, query, args):
        self.executed.append((query, args))

    async def fetchrow(self, query, *args):
        self.executed.append((query, args))
        return self.rows.pop(0) if self.rows else None

    async def fetchval(self, query, *args):
        self.executed.append((query, args))
        return self.rows.pop(0) if self.rows else None

    async def fetch(self, query, *args):
        self.executed.append((query, args))
        return self.rows.pop(0) if self.rows else []

    def transaction(self):
        return FakeTransaction()


class FakePool:
    def __init__(self, conn):
        self.conn = conn

    def acquire(self):
        pool = self

        class _Acquire:
            async def __aenter__(self):
                return pool.conn

            async def __aexit__(self, exc_type, exc, tb):
                return False

        return _Acquire()


_db_unavailable = None


@pytest_asyncio.fixture
async def db_pool():
    """Create and return a database connection pool, skipping without a database."""
    global _db_unavailable
    if _db_unavailable:
        pytest.skip(_db_unavailable)
    try:
        await init_db()
    except Exception as e:
        _db_unavailable = f"Database unavailable: {e}"
        pytest.skip(_db_unavailable)
    pool = await get_pool()
    yield pool
    await close_db()

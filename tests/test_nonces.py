"""Tests for the nonce ledger."""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from unittest.mock import AsyncMock, patch

import asyncpg
import pytest

from errors import InvalidArgument, NotFound, Contention, Conflict
from nonces import NonceLedger, RESERVED, USED

from conftest import FakeConnection, random_address


def nonce_row(signer, nonce, status=RESERVED, order_id=None):
    now = datetime.utcnow()
    return {
        'signer_address': signer, 'nonce': nonce, 'status': status,
        'order_id': order_id, 'created_at': now, 'updated_at': now
    }


# Retry policy, no database needed

@pytest.mark.asyncio
async def test_lost_race_is_retried():
    ledger = NonceLedger(pool=object(), max_attempts=5, base_delay=0)
    reserve = AsyncMock(side_effect=[
        asyncpg.exceptions.UniqueViolationError("duplicate key"),
        asyncpg.exceptions.UniqueViolationError("duplicate key"),
        7
    ])
    with patch.object(ledger, '_reserve', reserve):
        assert await ledger.next_nonce(random_address()) == 7
    assert reserve.await_count == 3


@pytest.mark.asyncio
async def test_exhausted_retries_raise_contention():
    ledger = NonceLedger(pool=object(), max_attempts=3, base_delay=0)
    reserve = AsyncMock(side_effect=asyncpg.exceptions.UniqueViolationError("duplicate key"))
    with patch.object(ledger, '_reserve', reserve):
        with pytest.raises(Contention):
            await ledger.next_nonce(random_address())
    assert reserve.await_count == 3


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    ledger = NonceLedger(pool=object(), max_attempts=5, base_delay=0)
    reserve = AsyncMock(side_effect=RuntimeError("connection lost"))
    with patch.object(ledger, '_reserve', reserve):
        with pytest.raises(RuntimeError):
            await ledger.next_nonce(random_address())
    assert reserve.await_count == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [0, -1, 51, "5", 2.5, True])
async def test_range_count_is_validated_before_any_write(count):
    ledger = NonceLedger(pool=object(), max_range=50)
    reserve = AsyncMock()
    with patch.object(ledger, '_reserve', reserve):
        with pytest.raises(InvalidArgument):
            await ledger.next_nonce_range(random_address(), count)
    reserve.assert_not_awaited()


@pytest.mark.asyncio
async def test_malformed_signer_is_rejected():
    ledger = NonceLedger(pool=object())
    with pytest.raises(InvalidArgument):
        await ledger.next_nonce("0xnope")


# mark_used and ensure_available against a fake connection

@pytest.mark.asyncio
async def test_mark_used_flips_reserved():
    signer = random_address()
    conn = FakeConnection(rows=[nonce_row(signer, 0), nonce_row(signer, 0, USED, 'order-1')])
    result = await NonceLedger(pool=object()).mark_used(signer, 0, 'order-1', conn=conn)
    assert result['status'] == USED
    assert result['order_id'] == 'order-1'
    assert "FOR UPDATE" in conn.executed[0][0]


@pytest.mark.asyncio
async def test_mark_used_same_order_is_idempotent():
    signer = random_address()
    conn = FakeConnection(rows=[nonce_row(signer, 0, USED, 'order-1')])
    result = await NonceLedger(pool=object()).mark_used(signer, 0, 'order-1', conn=conn)
    assert result['status'] == USED
    assert len(conn.executed) == 1


@pytest.mark.asyncio
async def test_mark_used_other_order_conflicts():
    signer = random_address()
    conn = FakeConnection(rows=[nonce_row(signer, 0, USED, 'order-1')])
    with pytest.raises(Conflict):
        await NonceLedger(pool=object()).mark_used(signer, 0, 'order-2', conn=conn)


@pytest.mark.asyncio
async def test_mark_used_unknown_nonce():
    conn = FakeConnection()
    with pytest.raises(NotFound):
        await NonceLedger(pool=object()).mark_used(random_address(), 3, 'order-1', conn=conn)


@pytest.mark.asyncio
async def test_ensure_available():
    signer = random_address()
    ledger = NonceLedger(pool=object())

    await ledger.ensure_available(FakeConnection(rows=[{'status': RESERVED, 'order_id': None}]), signer, 0)
    with pytest.raises(Conflict):
        await ledger.ensure_available(FakeConnection(rows=[{'status': USED, 'order_id': 'x'}]), signer, 0)
    with pytest.raises(InvalidArgument):
        await ledger.ensure_available(FakeConnection(), signer, 0)


# Against the database

@pytest.mark.asyncio
async def test_first_nonce_is_zero(db_pool):
    ledger = NonceLedger(db_pool)
    signer = random_address()
    assert await ledger.next_nonce(signer) == 0
    assert await ledger.next_nonce(signer) == 1
    status = await ledger.status_of(signer, 1)
    assert status['status'] == RESERVED
    assert status['order_id'] is None


@pytest.mark.asyncio
async def test_concurrent_allocation_is_unique_and_gapless(db_pool):
    ledger = NonceLedger(db_pool, max_attempts=20, base_delay=0.01)
    signer = random_address()

    nonces = await asyncio.gather(*(ledger.next_nonce(signer) for _ in range(10)))

    assert sorted(nonces) == list(range(10))


@pytest.mark.asyncio
async def test_signers_do_not_share_sequences(db_pool):
    ledger = NonceLedger(db_pool)
    first, second = random_address(), random_address()
    assert await ledger.next_nonce(first) == 0
    assert await ledger.next_nonce(second) == 0


@pytest.mark.asyncio
async def test_range_is_contiguous(db_pool):
    ledger = NonceLedger(db_pool)
    signer = random_address()
    await ledger.next_nonce(signer)

    result = await ledger.next_nonce_range(signer, 10)

    assert result['start'] == 1
    assert result['count'] == 10
    assert result['nonces'] == list(range(1, 11))
    assert await ledger.next_nonce(signer) == 11


class FailingInsertConnection:
    """Wraps a real connection and slips an invalid row into the middle of a batch insert."""

    def __init__(self, conn, signer):
        self._conn = conn
        self._signer = signer

    def __getattr__(self, name):
        return getattr(self._conn, name)

    async def executemany(self, query, args):
        args = list(args)
        args.insert(len(args) // 2, (self._signer, -1, RESERVED))
        return await self._conn.executemany(query, args)


class FailingInsertPool:
    def __init__(self, pool, signer):
        self._pool = pool
        self._signer = signer

    @asynccontextmanager
    async def acquire(self):
        async with self._pool.acquire() as conn:
            yield FailingInsertConnection(conn, self._signer)


@pytest.mark.asyncio
async def test_failed_range_reserves_nothing(db_pool):
    signer = random_address()
    ledger = NonceLedger(db_pool)
    assert await ledger.next_nonce(signer) == 0
    before = await ledger.get_nonces(signer)

    failing = NonceLedger(FailingInsertPool(db_pool, signer), max_attempts=1)
    with pytest.raises(asyncpg.exceptions.CheckViolationError):
        await failing.next_nonce_range(signer, 10)

    assert await ledger.get_nonces(signer) == before
    assert await ledger.next_nonce(signer) == 1


@pytest.mark.asyncio
async def test_ranges_and_singles_never_interleave(db_pool):
    ledger = NonceLedger(db_pool, max_attempts=20, base_delay=0.01)
    signer = random_address()

    results = await asyncio.gather(
        ledger.next_nonce_range(signer, 5),
        ledger.next_nonce(signer),
        ledger.next_nonce_range(signer, 3),
        ledger.next_nonce(signer),
    )

    ranges = [r['nonces'] for r in results if isinstance(r, dict)]
    singles = [r for r in results if isinstance(r, int)]
    for nonces in ranges:
        assert nonces == list(range(nonces[0], nonces[0] + len(nonces)))
    allocated = sorted(singles + [n for nonces in ranges for n in nonces])
    assert allocated == list(range(10))

    rows = await ledger.get_nonces(signer, status=RESERVED)
    assert [r['nonce'] for r in rows] == list(range(10))


@pytest.mark.asyncio
async def test_mark_used_round_trip(db_pool):
    ledger = NonceLedger(db_pool)
    signer = random_address()
    nonce = await ledger.next_nonce(signer)

    await ledger.mark_used(signer, nonce, 'order-1')
    await ledger.mark_used(signer, nonce, 'order-1')
    with pytest.raises(Conflict):
        await ledger.mark_used(signer, nonce, 'order-2')

    status = await ledger.status_of(signer, nonce)
    assert status['status'] == USED
    assert status['order_id'] == 'order-1'


@pytest.mark.asyncio
async def test_status_of_unknown_nonce(db_pool):
    with pytest.raises(NotFound):
        await NonceLedger(db_pool).status_of(random_address(), 0)

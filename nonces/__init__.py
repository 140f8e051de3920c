"""Nonce ledger module.

This module allocates per-signer nonces for off-chain signed orders:
- Allocation of single nonces and contiguous ranges
- Status lookups
- Marking a nonce used once its order is consumed on-chain

Uniqueness is enforced by the ``(signer_address, nonce)`` primary key, not by
application locks. Allocation reads the current maximum, inserts ``max + 1``
and retries with exponential backoff when a concurrent caller won the same
candidate.
"""
import logging
from typing import Optional, Dict, Any, List

import asyncpg
import backoff

from chain import normalize_address
from config import settings_conf
from database import get_pool
from errors import InvalidArgument, NotFound, Contention, Conflict

logger = logging.getLogger(__name__)

RESERVED = 'RESERVED'
USED = 'USED'

# Errors that mean "another allocator won this candidate, try again"
RETRYABLE_ERRORS = (
    asyncpg.exceptions.UniqueViolationError,
    asyncpg.exceptions.SerializationError,
)


def _format_nonce(row) -> Dict[str, Any]:
    return {
        'signer_address': row['signer_address'],
        'nonce': row['nonce'],
        'status': row['status'],
        'order_id': row['order_id'],
        'created_at': row['created_at'].isoformat() if row['created_at'] else None,
        'updated_at': row['updated_at'].isoformat() if row['updated_at'] else None
    }


class NonceLedger:
    """Durable per-signer nonce allocator."""

    def __init__(
        self,
        pool=None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        max_range: Optional[int] = None
    ):
        """Initialize the ledger.

        Args:
            pool: Optional database connection pool
            max_attempts: Reservation attempts before giving up with Contention
            base_delay: Backoff factor in seconds, the delay doubles per retry
            max_range: Largest count accepted by next_nonce_range
        """
        self.pool = pool
        self.max_attempts = max_attempts if max_attempts is not None else settings_conf['nonce_max_attempts']
        self.base_delay = base_delay if base_delay is not None else settings_conf['nonce_retry_base_delay']
        self.max_range = max_range if max_range is not None else settings_conf['max_nonce_range']

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def next_nonce(self, signer: str) -> int:
        """Reserve the next nonce for a signer.

        Raises:
            InvalidArgument: If the signer address is malformed
            Contention: If every attempt lost the race to a concurrent caller
        """
        signer = normalize_address(signer, 'signer address')
        start = await self._allocate(signer, 1)
        logger.debug(f"Reserved nonce {start} for {signer}")
        return start

    async def next_nonce_range(self, signer: str, count: int) -> Dict[str, Any]:
        """Reserve ``count`` contiguous nonces for a signer in one transaction.

        Returns:
            Dict with start, count and the reserved nonces

        Raises:
            InvalidArgument: If the address is malformed or count is out of range
            Contention: If every attempt lost the race to a concurrent caller
        """
        signer = normalize_address(signer, 'signer address')
        if isinstance(count, bool) or not isinstance(count, int):
            raise InvalidArgument(f"count must be an integer, got {count!r}")
        if count < 1 or count > self.max_range:
            raise InvalidArgument(
                f"count must be between 1 and {self.max_range}, got {count}"
            )

        start = await self._allocate(signer, count)
        logger.info(f"Reserved nonces {start}..{start + count - 1} for {signer}")
        return {
            'signer_address': signer,
            'start': start,
            'count': count,
            'nonces': list(range(start, start + count))
        }

    async def _allocate(self, signer: str, count: int) -> int:
        await self.ensure_pool()

        attempt = backoff.on_exception(
            backoff.expo,
            RETRYABLE_ERRORS,
            max_tries=self.max_attempts,
            factor=self.base_delay,
            jitter=backoff.full_jitter,
            on_backoff=self._log_backoff,
            on_giveup=self._log_giveup
        )(self._reserve)

        try:
            return await attempt(signer, count)
        except RETRYABLE_ERRORS as e:
            raise Contention(
                f"Could not reserve {count} nonce(s) for {signer} "
                f"after {self.max_attempts} attempts"
            ) from e

    async def _reserve(self, signer: str, count: int) -> int:
        """One reservation attempt: read the maximum, insert the next run."""
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchval(
                    'SELECT MAX(nonce) FROM nonces WHERE signer_address = $1',
                    signer
                )
                start = 0 if current is None else current + 1
                await conn.executemany(
                    '''
                    INSERT INTO nonces (signer_address, nonce, status)
                    VALUES ($1, $2, $3)
                    ''',
                    [(signer, n, RESERVED) for n in range(start, start + count)]
                )
                return start

    @staticmethod
    def _log_backoff(details):
        logger.debug(
            f"Nonce candidate taken for {details['args'][0]}, "
            f"retry {details['tries']} in {details['wait']:.3f}s"
        )

    @staticmethod
    def _log_giveup(details):
        logger.warning(
            f"Nonce allocation for {details['args'][0]} gave up after "
            f"{details['tries']} attempts"
        )

    async def status_of(self, signer: str, nonce: int) -> Dict[str, Any]:
        """Get the status of an allocated nonce.

        Raises:
            InvalidArgument: If the signer address is malformed
            NotFound: If the nonce was never allocated
        """
        signer = normalize_address(signer, 'signer address')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM nonces WHERE signer_address = $1 AND nonce = $2',
                signer, nonce
            )
        if not row:
            raise NotFound(f"Nonce {nonce} was never allocated for {signer}")
        return _format_nonce(row)

    async def get_nonces(self, signer: str, status: Optional[str] = None) -> List[Dict[str, Any]]:
        """List nonces allocated to a signer, oldest first.

        Raises:
            InvalidArgument: If the address or status filter is malformed
        """
        signer = normalize_address(signer, 'signer address')
        if status is not None and status not in (RESERVED, USED):
            raise InvalidArgument(f"Invalid nonce status: {status!r}")
        await self.ensure_pool()

        query = 'SELECT * FROM nonces WHERE signer_address = $1'
        params = [signer]
        if status:
            query += ' AND status = $2'
            params.append(status)
        query += ' ORDER BY nonce'

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [_format_nonce(row) for row in rows]

    async def mark_used(self, signer: str, nonce: int, order_id: str, conn=None) -> Dict[str, Any]:
        """Flip a nonce from RESERVED to USED and stamp the order id.

        Repeating the call with the same order id is a no-op.

        Args:
            conn: Optional connection with an open transaction to run in

        Raises:
            NotFound: If the nonce was never allocated
            Conflict: If the nonce is already used by a different order
        """
        signer = normalize_address(signer, 'signer address')
        order_id = str(order_id)

        if conn is not None:
            return await self._mark_used(conn, signer, nonce, order_id)

        await self.ensure_pool()
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                return await self._mark_used(conn, signer, nonce, order_id)

    async def _mark_used(self, conn, signer: str, nonce: int, order_id: str) -> Dict[str, Any]:
        row = await conn.fetchrow(
            '''
            SELECT * FROM nonces
            WHERE signer_address = $1 AND nonce = $2
            FOR UPDATE
            ''',
            signer, nonce
        )
        if not row:
            raise NotFound(f"Nonce {nonce} was never allocated for {signer}")

        if row['status'] == USED:
            if row['order_id'] == order_id:
                return _format_nonce(row)
            raise Conflict(
                f"Nonce {nonce} for {signer} already used by order {row['order_id']}"
            )

        row = await conn.fetchrow(
            '''
            UPDATE nonces
            SET status = $3, order_id = $4, updated_at = now()
            WHERE signer_address = $1 AND nonce = $2
            RETURNING *
            ''',
            signer, nonce, USED, order_id
        )
        logger.info(f"Nonce {nonce} for {signer} used by order {order_id}")
        return _format_nonce(row)

    async def ensure_available(self, conn, signer: str, nonce: int) -> None:
        """Check a nonce can still back a new signed order.

        Raises:
            InvalidArgument: If the nonce was never allocated to the signer
            Conflict: If the nonce is already used (a replayed order)
        """
        row = await conn.fetchrow(
            'SELECT status, order_id FROM nonces WHERE signer_address = $1 AND nonce = $2',
            signer, nonce
        )
        if not row:
            raise InvalidArgument(f"Nonce {nonce} was never allocated for {signer}")
        if row['status'] == USED:
            raise Conflict(
                f"Nonce {nonce} for {signer} already used by order {row['order_id']}"
            )


__all__ = ['NonceLedger', 'RESERVED', 'USED']

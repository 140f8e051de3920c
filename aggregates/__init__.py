"""Collection aggregate module.

Keeps the read-optimised collection projection in step with listings:
- Floor price, the lowest price among ACTIVE listings
- Total volume and sales count, grown by completed sales

Recomputation runs on the caller's connection so it commits or rolls back
together with the listing change that triggered it.
"""
import logging
import uuid
from decimal import Decimal
from typing import Optional, Dict, Any

from chain import normalize_address
from database import get_pool
from errors import NotFound

logger = logging.getLogger(__name__)


def _format_collection(row) -> Dict[str, Any]:
    return {
        'id': str(row['id']),
        'contract_address': row['contract_address'],
        'name': row['name'],
        'floor_price': str(row['floor_price']) if row['floor_price'] is not None else None,
        'total_volume': str(row['total_volume']),
        'sales_count': row['sales_count'],
        'updated_at': row['updated_at'].isoformat() if row['updated_at'] else None
    }


class CollectionRegistry:
    """Maps contract addresses to registered collections."""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def lookup(self, contract: str, conn=None) -> Optional[str]:
        """Return the collection id for a contract, or None if unregistered."""
        contract = normalize_address(contract, 'contract address')
        if conn is not None:
            value = await conn.fetchval(
                'SELECT id FROM collections WHERE contract_address = $1', contract
            )
        else:
            await self.ensure_pool()
            async with self.pool.acquire() as conn:
                value = await conn.fetchval(
                    'SELECT id FROM collections WHERE contract_address = $1', contract
                )
        return str(value) if value else None

    async def register(self, contract: str, name: Optional[str] = None) -> Dict[str, Any]:
        """Register a collection contract. Registering twice keeps the first row."""
        contract = normalize_address(contract, 'contract address')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    '''
                    INSERT INTO collections (contract_address, name)
                    VALUES ($1, $2)
                    ON CONFLICT (contract_address) DO NOTHING
                    ''',
                    contract, name
                )
                # Seed the floor from listings that predate registration
                await CollectionAggregator.recompute(conn, contract)
                row = await conn.fetchrow(
                    'SELECT * FROM collections WHERE contract_address = $1', contract
                )
        logger.info(f"Registered collection {contract}")
        return _format_collection(row)


class CollectionAggregator:
    """Recomputes derived collection statistics."""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    @staticmethod
    async def recompute(conn, contract: str, volume_delta: Decimal = Decimal(0)) -> Optional[Dict[str, Any]]:
        """Refresh the floor price and fold a sale into the volume.

        Must be called on the connection that changed the listings, inside
        its transaction. Calling it with a zero delta is idempotent.

        Args:
            conn: Connection with an open transaction
            contract: Normalised collection contract address
            volume_delta: Price of a sale completed in this transaction

        Returns:
            The updated aggregate, or None if the contract is not registered
        """
        collection_id = await CollectionRegistry().lookup(contract, conn=conn)
        if collection_id is None:
            logger.info(f"No registered collection for {contract}, aggregate skipped")
            return None

        sales = 1 if volume_delta else 0
        row = await conn.fetchrow(
            '''
            UPDATE collections
            SET floor_price = (
                    SELECT MIN(price) FROM listings
                    WHERE nft_contract = $2 AND status = 'ACTIVE'
                ),
                total_volume = total_volume + $3,
                sales_count = sales_count + $4,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            ''',
            uuid.UUID(collection_id), contract, Decimal(volume_delta), sales
        )
        return _format_collection(row)

    async def get_stats(self, contract: str) -> Dict[str, Any]:
        """Get the aggregate for a collection.

        Raises:
            NotFound: If the contract is not a registered collection
        """
        contract = normalize_address(contract, 'contract address')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                'SELECT * FROM collections WHERE contract_address = $1', contract
            )
        if not row:
            raise NotFound(f"Collection {contract} not found")
        return _format_collection(row)


__all__ = ['CollectionRegistry', 'CollectionAggregator']

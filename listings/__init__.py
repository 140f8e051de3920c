"""Listings module for managing marketplace listings.

This module provides functionality for:
- Creating listings from verified, signed list requests
- Cancelling active listings
- Fetching and searching listings

A listing is ACTIVE, SOLD or CANCELLED. SOLD and CANCELLED are terminal;
listing an item again takes a new row. Only the event reconciler and bid
acceptance move a listing to SOLD.
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Union, Any

import asyncpg

from aggregates import CollectionAggregator
from chain import normalize_address, normalize_token_id
from database import get_pool, parse_uuid
from errors import InvalidArgument, NotFound, Conflict, AlreadyListed, InvalidState
from nonces import NonceLedger
from .search import search_listings, LISTING_STATUSES

logger = logging.getLogger(__name__)

ACTIVE_LISTING_INDEX = 'idx_listings_one_active'


def parse_price(price: Any, field: str = 'price') -> Decimal:
    """Parse a strictly positive decimal amount."""
    try:
        value = Decimal(str(price))
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidArgument(f"Invalid {field}: {price!r}")
    if not value.is_finite() or value <= 0:
        raise InvalidArgument(f"{field} must be positive, got {price!r}")
    return value


def format_listing(row) -> Dict[str, Any]:
    """Convert a listings row to a JSON friendly dict."""
    return {
        'id': str(row['id']),
        'nft_contract': row['nft_contract'],
        'token_id': str(int(row['token_id'])),
        'maker': row['maker'],
        'price': str(row['price']),
        'nonce': row['nonce'],
        'signature': row['signature'],
        'status': row['status'],
        'applied_events': row['applied_events'],
        'buyer': row['buyer'],
        'created_at': row['created_at'].isoformat() if row['created_at'] else None,
        'updated_at': row['updated_at'].isoformat() if row['updated_at'] else None
    }


class ListingManager:
    """Manager class for handling listing operations."""

    def __init__(self, pool=None, nonces: Optional[NonceLedger] = None):
        """Initialize the listing manager.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            nonces: Nonce ledger used to check the listing's order nonce
        """
        self.pool = pool
        self.nonces = nonces or NonceLedger(pool)

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def create_listing(
        self,
        maker: str,
        nft_contract: str,
        token_id: Union[int, str],
        price: Union[Decimal, str],
        nonce: int,
        signature: Optional[str] = None
    ) -> Dict[str, Any]:
        """Create a new ACTIVE listing.

        The signature is verified by the caller; it is stored as given.

        Args:
            maker: Seller address that signed the order
            nft_contract: Collection contract address
            token_id: Token id within the collection
            price: Asking price, must be positive
            nonce: Maker nonce embedded in the signed order
            signature: Order signature

        Returns:
            Dict containing the created listing

        Raises:
            InvalidArgument: If an input is malformed or the nonce was never allocated
            Conflict: If the nonce is already used by another order
            AlreadyListed: If the maker already has an ACTIVE listing for the item
        """
        maker = normalize_address(maker, 'maker address')
        nft_contract = normalize_address(nft_contract, 'contract address')
        token_id = normalize_token_id(token_id)
        price = parse_price(price)
        if isinstance(nonce, bool) or not isinstance(nonce, int) or nonce < 0:
            raise InvalidArgument(f"Invalid nonce: {nonce!r}")

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await self.nonces.ensure_available(conn, maker, nonce)

                existing = await conn.fetchval(
                    '''
                    SELECT id FROM listings
                    WHERE nft_contract = $1 AND token_id = $2 AND maker = $3
                    AND status = 'ACTIVE'
                    ''',
                    nft_contract, Decimal(token_id), maker
                )
                if existing:
                    raise AlreadyListed(
                        f"Token {token_id} of {nft_contract} is already listed by {maker}"
                    )

                try:
                    row = await conn.fetchrow(
                        '''
                        INSERT INTO listings (
                            nft_contract, token_id, maker, price, nonce, signature
                        ) VALUES ($1, $2, $3, $4, $5, $6)
                        RETURNING *
                        ''',
                        nft_contract, Decimal(token_id), maker, price, nonce, signature
                    )
                except asyncpg.exceptions.UniqueViolationError as e:
                    if e.constraint_name == ACTIVE_LISTING_INDEX:
                        raise AlreadyListed(
                            f"Token {token_id} of {nft_contract} is already listed by {maker}"
                        )
                    raise Conflict(f"Nonce {nonce} of {maker} already backs another listing")

                await CollectionAggregator.recompute(conn, nft_contract)

        logger.info(f"Created listing {row['id']} for token {token_id} of {nft_contract}")
        return format_listing(row)

    async def cancel_listing(self, listing_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        """Cancel an ACTIVE listing.

        Raises:
            NotFound: If the listing doesn't exist
            InvalidState: If the listing is already SOLD or CANCELLED
        """
        listing_id = parse_uuid(listing_id, 'Listing')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    'SELECT * FROM listings WHERE id = $1 FOR UPDATE',
                    listing_id
                )
                if not current:
                    raise NotFound(f"Listing {listing_id} not found")
                if current['status'] != 'ACTIVE':
                    raise InvalidState(
                        f"Listing {listing_id} is {current['status']}, only ACTIVE listings can be cancelled"
                    )

                row = await conn.fetchrow(
                    '''
                    UPDATE listings
                    SET status = 'CANCELLED', updated_at = now()
                    WHERE id = $1
                    RETURNING *
                    ''',
                    listing_id
                )
                await CollectionAggregator.recompute(conn, row['nft_contract'])

        logger.info(f"Cancelled listing {listing_id}")
        return format_listing(row)

    async def get_listing(self, listing_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        """Get a listing by ID.

        Raises:
            NotFound: If listing doesn't exist
        """
        listing_id = parse_uuid(listing_id, 'Listing')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM listings WHERE id = $1', listing_id)
        if not row:
            raise NotFound(f"Listing {listing_id} not found")
        return format_listing(row)

    async def get_listings(
        self,
        nft_contract: Optional[str] = None,
        maker: Optional[str] = None,
        token_id: Optional[Union[int, str]] = None,
        status: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        limit: int = 50,
        offset: int = 0
    ) -> Dict[str, Any]:
        """Search listings, see ``search_listings``."""
        await self.ensure_pool()
        return await search_listings(
            nft_contract=nft_contract,
            maker=maker,
            token_id=token_id,
            status=status,
            min_price=min_price,
            max_price=max_price,
            limit=limit,
            offset=offset,
            pool=self.pool
        )


__all__ = [
    'ListingManager',
    'format_listing',
    'parse_price',
    'search_listings',
    'LISTING_STATUSES',
]

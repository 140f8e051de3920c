"""Bids module for managing offers to buy listed items.

A bid is PLACED, ACCEPTED or WITHDRAWN. Both ACCEPTED and WITHDRAWN are
terminal. A bidder holds at most one PLACED bid per item.
"""

import logging
import uuid
from decimal import Decimal
from typing import Dict, List, Optional, Union, Any

import asyncpg

from aggregates import CollectionAggregator
from chain import normalize_address, normalize_token_id
from database import get_pool, parse_uuid
from errors import InvalidArgument, NotFound, DuplicateBid, InvalidState
from listings import parse_price, format_listing

logger = logging.getLogger(__name__)

BID_STATUSES = ('PLACED', 'ACCEPTED', 'WITHDRAWN')


def format_bid(row) -> Dict[str, Any]:
    """Convert a bids row to a JSON friendly dict."""
    return {
        'id': str(row['id']),
        'contract_address': row['contract_address'],
        'token_id': str(int(row['token_id'])),
        'bidder_address': row['bidder_address'],
        'amount': str(row['amount']),
        'status': row['status'],
        'applied_events': row['applied_events'],
        'listing_id': str(row['listing_id']) if row['listing_id'] else None,
        'created_at': row['created_at'].isoformat() if row['created_at'] else None,
        'updated_at': row['updated_at'].isoformat() if row['updated_at'] else None
    }


class BidManager:
    """Manager class for handling bid operations."""

    def __init__(self, pool=None):
        self.pool = pool

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def place_bid(
        self,
        contract_address: str,
        token_id: Union[int, str],
        bidder_address: str,
        amount: Union[Decimal, str]
    ) -> Dict[str, Any]:
        """Place a bid on an item.

        The bid is attached to the item's ACTIVE listing when there is one.

        Raises:
            InvalidArgument: If an input is malformed
            DuplicateBid: If the bidder already has a PLACED bid on the item
        """
        contract_address = normalize_address(contract_address, 'contract address')
        bidder_address = normalize_address(bidder_address, 'bidder address')
        token_id = normalize_token_id(token_id)
        amount = parse_price(amount, 'amount')

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                existing = await conn.fetchval(
                    '''
                    SELECT id FROM bids
                    WHERE contract_address = $1 AND token_id = $2
                    AND bidder_address = $3 AND status = 'PLACED'
                    ''',
                    contract_address, Decimal(token_id), bidder_address
                )
                if existing:
                    raise DuplicateBid(
                        f"{bidder_address} already has an open bid on token {token_id} of {contract_address}"
                    )

                listing_id = await conn.fetchval(
                    '''
                    SELECT id FROM listings
                    WHERE nft_contract = $1 AND token_id = $2 AND status = 'ACTIVE'
                    ORDER BY price ASC
                    LIMIT 1
                    ''',
                    contract_address, Decimal(token_id)
                )

                try:
                    row = await conn.fetchrow(
                        '''
                        INSERT INTO bids (
                            contract_address, token_id, bidder_address, amount, listing_id
                        ) VALUES ($1, $2, $3, $4, $5)
                        RETURNING *
                        ''',
                        contract_address, Decimal(token_id), bidder_address, amount, listing_id
                    )
                except asyncpg.exceptions.UniqueViolationError:
                    raise DuplicateBid(
                        f"{bidder_address} already has an open bid on token {token_id} of {contract_address}"
                    )

        logger.info(f"Placed bid {row['id']} by {bidder_address} on token {token_id} of {contract_address}")
        return format_bid(row)

    async def accept_bid(
        self,
        bid_id: Union[str, uuid.UUID],
        seller_address: Optional[str] = None
    ) -> Dict[str, Any]:
        """Accept a PLACED bid, selling the item's ACTIVE listing to the bidder.

        Sale volume is added when the accept event is reconciled, not here.

        Args:
            bid_id: Bid to accept
            seller_address: Optional maker whose listing is accepted into

        Returns:
            Dict with the accepted bid and the sold listing

        Raises:
            NotFound: If the bid doesn't exist
            InvalidState: If the bid is not PLACED or the item has no ACTIVE listing
        """
        bid_id = parse_uuid(bid_id, 'Bid')
        if seller_address is not None:
            seller_address = normalize_address(seller_address, 'seller address')

        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                bid = await self._lock_bid(conn, bid_id)
                if bid['status'] != 'PLACED':
                    raise InvalidState(f"Bid {bid_id} is {bid['status']}, only PLACED bids can be accepted")

                query = '''
                    SELECT * FROM listings
                    WHERE nft_contract = $1 AND token_id = $2 AND status = 'ACTIVE'
                '''
                params = [bid['contract_address'], bid['token_id']]
                if seller_address:
                    query += ' AND maker = $3'
                    params.append(seller_address)
                query += ' ORDER BY price ASC LIMIT 1 FOR UPDATE'

                listing = await conn.fetchrow(query, *params)
                if not listing:
                    raise InvalidState(f"No active listing to accept bid {bid_id} into")

                bid = await conn.fetchrow(
                    '''
                    UPDATE bids
                    SET status = 'ACCEPTED', listing_id = $2, updated_at = now()
                    WHERE id = $1
                    RETURNING *
                    ''',
                    bid_id, listing['id']
                )
                listing = await conn.fetchrow(
                    '''
                    UPDATE listings
                    SET status = 'SOLD', buyer = $2, updated_at = now()
                    WHERE id = $1
                    RETURNING *
                    ''',
                    listing['id'], bid['bidder_address']
                )
                await CollectionAggregator.recompute(conn, listing['nft_contract'])

        logger.info(f"Accepted bid {bid_id} into listing {listing['id']}")
        return {'bid': format_bid(bid), 'listing': format_listing(listing)}

    async def withdraw_bid(self, bid_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        """Withdraw a PLACED bid.

        Raises:
            NotFound: If the bid doesn't exist
            InvalidState: If the bid is already ACCEPTED or WITHDRAWN
        """
        bid_id = parse_uuid(bid_id, 'Bid')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                bid = await self._lock_bid(conn, bid_id)
                if bid['status'] != 'PLACED':
                    raise InvalidState(f"Bid {bid_id} is {bid['status']}, only PLACED bids can be withdrawn")

                row = await conn.fetchrow(
                    '''
                    UPDATE bids
                    SET status = 'WITHDRAWN', updated_at = now()
                    WHERE id = $1
                    RETURNING *
                    ''',
                    bid_id
                )

        logger.info(f"Withdrew bid {bid_id}")
        return format_bid(row)

    @staticmethod
    async def _lock_bid(conn, bid_id: uuid.UUID):
        bid = await conn.fetchrow('SELECT * FROM bids WHERE id = $1 FOR UPDATE', bid_id)
        if not bid:
            raise NotFound(f"Bid {bid_id} not found")
        return bid

    async def get_bid(self, bid_id: Union[str, uuid.UUID]) -> Dict[str, Any]:
        """Get a bid by ID.

        Raises:
            NotFound: If the bid doesn't exist
        """
        bid_id = parse_uuid(bid_id, 'Bid')
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM bids WHERE id = $1', bid_id)
        if not row:
            raise NotFound(f"Bid {bid_id} not found")
        return format_bid(row)

    async def get_bids_for_item(
        self,
        contract_address: str,
        token_id: Union[int, str],
        status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        """Get bids on an item, highest amount first."""
        contract_address = normalize_address(contract_address, 'contract address')
        token_id = normalize_token_id(token_id)
        if status is not None and status not in BID_STATUSES:
            raise InvalidArgument(f"Invalid bid status: {status!r}")

        await self.ensure_pool()

        query = 'SELECT * FROM bids WHERE contract_address = $1 AND token_id = $2'
        params = [contract_address, Decimal(token_id)]
        if status:
            query += ' AND status = $3'
            params.append(status)
        query += ' ORDER BY amount DESC, created_at ASC'

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(query, *params)
        return [format_bid(row) for row in rows]


__all__ = ['BidManager', 'format_bid', 'BID_STATUSES']

"""Chain event reconciliation module.

This module applies verified marketplace contract events to local state:
- Records every distinct transaction once in the audit table
- Drives listings and bids through the transition table
- Marks order nonces used and folds sales into collection aggregates

Each event is applied in one database transaction. The audit row is written
first and is the primary guard against redelivery. State changes run inside a
savepoint so that an orphan event keeps its audit row while everything else
rolls back.
"""
import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List, Union

import asyncpg
import backoff

from aggregates import CollectionAggregator
from bids import format_bid
from chain import ChainEvent, ChainLogFetcher, EventMethod, normalize_address, normalize_token_id, normalize_tx_hash
from database import get_pool
from errors import NotFound, Conflict, DuplicateEvent, OrphanEvent, EventNotFound
from listings import format_listing
from nonces import NonceLedger
from .transitions import (
    CREATE,
    Effect, Transition,
    ListingEvent,
    ListingSnapshot, BidSnapshot,
    plan_list, plan_purchase, plan_cancel,
    plan_bid_placed, plan_bid_accept, plan_bid_withdraw,
)

logger = logging.getLogger(__name__)

APPLIED = 'applied'
ORPHAN = 'orphan'
DUPLICATE = 'duplicate'


def format_transaction(row) -> Dict[str, Any]:
    """Convert a transactions row to a JSON friendly dict."""
    def dec(value):
        return str(value) if value is not None else None

    return {
        'id': str(row['id']),
        'tx_hash': row['tx_hash'],
        'method': row['method'],
        'contract_address': row['contract_address'],
        'token_id': str(int(row['token_id'])),
        'from_address': row['from_address'],
        'to_address': row['to_address'],
        'price': dec(row['price']),
        'block_hash': row['block_hash'],
        'block_number': row['block_number'],
        'gas_used': dec(row['gas_used']),
        'gas_price': dec(row['gas_price']),
        'cumulative_gas_used': dec(row['cumulative_gas_used']),
        'txn_fee': dec(row['txn_fee']),
        'outcome': row['outcome'],
        'created_at': row['created_at'].isoformat() if row['created_at'] else None
    }


def format_purchase(row) -> Dict[str, Any]:
    return {
        'id': str(row['id']),
        'listing_id': str(row['listing_id']),
        'bid_id': str(row['bid_id']) if row['bid_id'] else None,
        'buyer_address': row['buyer_address'],
        'price': str(row['price']),
        'tx_hash': row['tx_hash'],
        'created_at': row['created_at'].isoformat() if row['created_at'] else None
    }


class EventReconciler:
    """Applies verified chain events exactly once."""

    def __init__(self, pool=None, nonces: Optional[NonceLedger] = None, fetcher: Optional[ChainLogFetcher] = None):
        """Initialize the reconciler.

        Args:
            pool: Optional database pool. If not provided, will get from database module.
            nonces: Nonce ledger used to mark order nonces used
            fetcher: Chain log fetcher used by refresh
        """
        self.pool = pool
        self.nonces = nonces or NonceLedger(pool)
        self.fetcher = fetcher

    async def ensure_pool(self):
        """Ensure we have a database pool."""
        if not self.pool:
            self.pool = await get_pool()

    async def refresh(self, tx_hash: str, method: Union[str, EventMethod]) -> Dict[str, Any]:
        """Look up a verified event by transaction hash and apply it.

        Raises:
            InvalidArgument: If the hash or method is malformed
            EventNotFound: If the fetcher has no such event
        """
        tx_hash = normalize_tx_hash(tx_hash)
        if not isinstance(method, EventMethod):
            method = EventMethod.parse(method)
        if self.fetcher is None:
            raise RuntimeError("No chain log fetcher configured")

        event = await self.fetcher.fetch_verified_event(tx_hash, method)
        if event is None:
            raise EventNotFound(f"No verified {method.value} event for {tx_hash}")
        return await self.apply(event)

    @backoff.on_exception(
        backoff.expo,
        asyncpg.exceptions.SerializationError,
        max_tries=5,
        factor=0.05
    )
    async def apply(self, event: ChainEvent) -> Dict[str, Any]:
        """Apply one verified event.

        Returns:
            Dict with the outcome and the entities it touched

        Raises:
            DuplicateEvent: If the transaction or its logical action was already applied
            OrphanEvent: If the event has no valid target; its audit row is kept
        """
        await self.ensure_pool()
        orphan = None

        async with self.pool.acquire() as conn:
            async with conn.transaction():
                tx_id = await self._record_transaction(conn, event)
                if tx_id is None:
                    logger.info(f"Transaction {event.tx_hash} already recorded, skipping")
                    raise DuplicateEvent(f"Transaction {event.tx_hash} was already applied")

                try:
                    async with conn.transaction():
                        result = await self._dispatch(conn, event)
                except OrphanEvent as e:
                    await conn.execute(
                        'UPDATE transactions SET outcome = $2 WHERE id = $1',
                        tx_id, ORPHAN
                    )
                    e.tx_hash = event.tx_hash
                    orphan = e
                except DuplicateEvent:
                    logger.info(f"{event.method.value} in {event.tx_hash} already applied under another transaction")
                    raise

        if orphan is not None:
            logger.warning(
                f"Orphan {event.method.value} event {event.tx_hash} for token "
                f"{event.token_id} of {event.contract_address}: {orphan}"
            )
            raise orphan

        result.update({
            'tx_hash': event.tx_hash,
            'method': event.method.value,
            'outcome': APPLIED,
            'recipient': event.counterparty
        })
        logger.info(f"Applied {event.method.value} event {event.tx_hash} ({result['transition']})")
        return result

    async def _record_transaction(self, conn, event: ChainEvent):
        return await conn.fetchval(
            '''
            INSERT INTO transactions (
                tx_hash, method, contract_address, token_id, from_address,
                to_address, price, block_hash, block_number, gas_used,
                gas_price, cumulative_gas_used, txn_fee, outcome
            ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
            ON CONFLICT (tx_hash) DO NOTHING
            RETURNING id
            ''',
            event.tx_hash, event.method.value, event.contract_address,
            Decimal(event.token_id), event.from_address, event.to_address,
            event.price, event.block_hash, event.block_number, event.gas_used,
            event.gas_price, event.cumulative_gas_used, event.txn_fee, APPLIED
        )

    async def _dispatch(self, conn, event: ChainEvent) -> Dict[str, Any]:
        handlers = {
            EventMethod.LIST: self._apply_list,
            EventMethod.PURCHASE: self._apply_purchase,
            EventMethod.CANCEL: self._apply_cancel,
            EventMethod.BID_PLACED: self._apply_bid_placed,
            EventMethod.BID_ACCEPT: self._apply_bid_accept,
            EventMethod.BID_WITHDRAW: self._apply_bid_withdraw,
        }
        return await handlers[event.method](conn, event)

    # Listing events

    async def _lock_listing_for_event(self, conn, event: ChainEvent):
        """Lock the listing a sale or cancel event targets.

        With a nonce the listing is exact. Without one, the ACTIVE listing is
        preferred, then the most recent one.
        """
        params = [event.contract_address, Decimal(event.token_id), event.seller]
        query = '''
            SELECT * FROM listings
            WHERE nft_contract = $1 AND token_id = $2 AND maker = $3
        '''
        if event.nonce is not None:
            query += ' AND nonce = $4'
            params.append(event.nonce)
        query += " ORDER BY (status = 'ACTIVE') DESC, created_at DESC LIMIT 1 FOR UPDATE"
        return await conn.fetchrow(query, *params)

    async def _apply_list(self, conn, event: ChainEvent) -> Dict[str, Any]:
        row = await conn.fetchrow(
            '''
            SELECT * FROM listings
            WHERE nft_contract = $1 AND token_id = $2 AND maker = $3
            AND (nonce = $4 OR status = 'ACTIVE')
            ORDER BY (nonce = $4) DESC
            LIMIT 1
            FOR UPDATE
            ''',
            event.contract_address, Decimal(event.token_id), event.seller, event.nonce
        )
        snapshot = ListingSnapshot.from_row(row) if row else None
        transition = plan_list(snapshot, event.nonce)

        if transition.kind == CREATE:
            try:
                row = await conn.fetchrow(
                    '''
                    INSERT INTO listings (
                        nft_contract, token_id, maker, price, nonce, signature,
                        status, applied_events
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING *
                    ''',
                    event.contract_address, Decimal(event.token_id), event.seller,
                    event.price, event.nonce, event.signature,
                    transition.next_status.value, int(transition.flag)
                )
            except asyncpg.exceptions.UniqueViolationError:
                raise OrphanEvent(
                    f"Nonce {event.nonce} of {event.seller} already backs another listing"
                )
        else:
            row = await self._update_listing(conn, row['id'], transition)

        return await self._finish_listing(conn, event, transition, row)

    async def _apply_purchase(self, conn, event: ChainEvent) -> Dict[str, Any]:
        row = await self._lock_listing_for_event(conn, event)
        transition = plan_purchase(ListingSnapshot.from_row(row) if row else None)
        row = await self._update_listing(conn, row['id'], transition, buyer=event.buyer)
        return await self._finish_listing(conn, event, transition, row)

    async def _apply_cancel(self, conn, event: ChainEvent) -> Dict[str, Any]:
        row = await self._lock_listing_for_event(conn, event)
        transition = plan_cancel(ListingSnapshot.from_row(row) if row else None)
        row = await self._update_listing(conn, row['id'], transition)
        return await self._finish_listing(conn, event, transition, row)

    async def _update_listing(self, conn, listing_id, transition: Transition, buyer: Optional[str] = None):
        return await conn.fetchrow(
            '''
            UPDATE listings
            SET status = $2,
                applied_events = applied_events | $3,
                buyer = COALESCE($4, buyer),
                updated_at = now()
            WHERE id = $1
            RETURNING *
            ''',
            listing_id, transition.next_status.value, int(transition.flag), buyer
        )

    async def _finish_listing(self, conn, event: ChainEvent, transition: Transition, listing) -> Dict[str, Any]:
        purchase = None
        volume = Decimal(0)

        if transition.has(Effect.MARK_NONCE_USED):
            await self._mark_nonce(conn, listing)
        if transition.has(Effect.RECORD_SALE):
            price = event.price or listing['price']
            purchase = await self._record_purchase(conn, event, listing['id'], event.buyer, price)
            volume = price

        collection = None
        if transition.has(Effect.RECOMPUTE_FLOOR) or volume:
            collection = await CollectionAggregator.recompute(conn, listing['nft_contract'], volume)

        return {
            'transition': transition.kind,
            'listing': format_listing(listing),
            'bid': None,
            'purchase': purchase,
            'collection': collection
        }

    # Bid events

    async def _lock_bid_for_event(self, conn, event: ChainEvent, placed_only: bool = False):
        """Lock the bidder's open bid on the item, else their most recent one."""
        query = '''
            SELECT * FROM bids
            WHERE contract_address = $1 AND token_id = $2 AND bidder_address = $3
        '''
        if placed_only:
            query += " AND status = 'PLACED'"
        query += " ORDER BY (status = 'PLACED') DESC, updated_at DESC LIMIT 1 FOR UPDATE"
        return await conn.fetchrow(
            query, event.contract_address, Decimal(event.token_id), event.buyer
        )

    async def _apply_bid_placed(self, conn, event: ChainEvent) -> Dict[str, Any]:
        """Create or confirm the bidder's open bid on the item.

        Only PLACED bids are matched. A BidPlaced event that arrives after the
        bidder's previous bid was withdrawn or accepted is a new bid, so it
        creates a new row. The flip side is that an upstream retry of the old
        BidPlaced under a different tx hash is indistinguishable from a re-bid
        and is applied as one; a retry under the same tx hash is still caught
        by the transaction record.
        """
        row = await self._lock_bid_for_event(conn, event, placed_only=True)
        transition = plan_bid_placed(BidSnapshot.from_row(row) if row else None)

        if transition.kind == CREATE:
            listing_id = await conn.fetchval(
                '''
                SELECT id FROM listings
                WHERE nft_contract = $1 AND token_id = $2 AND status = 'ACTIVE'
                ORDER BY price ASC
                LIMIT 1
                ''',
                event.contract_address, Decimal(event.token_id)
            )
            row = await conn.fetchrow(
                '''
                INSERT INTO bids (
                    contract_address, token_id, bidder_address, amount,
                    status, applied_events, listing_id
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                RETURNING *
                ''',
                event.contract_address, Decimal(event.token_id), event.buyer,
                event.price, transition.next_status.value, int(transition.flag), listing_id
            )
        else:
            row = await conn.fetchrow(
                '''
                UPDATE bids
                SET applied_events = applied_events | $2,
                    amount = COALESCE($3, amount),
                    updated_at = now()
                WHERE id = $1
                RETURNING *
                ''',
                row['id'], int(transition.flag), event.price
            )

        return {
            'transition': transition.kind,
            'listing': None,
            'bid': format_bid(row),
            'purchase': None,
            'collection': None
        }

    async def _apply_bid_accept(self, conn, event: ChainEvent) -> Dict[str, Any]:
        bid = await self._lock_bid_for_event(conn, event)

        listing = None
        if bid and bid['status'] == 'ACCEPTED' and bid['listing_id']:
            listing = await conn.fetchrow(
                'SELECT * FROM listings WHERE id = $1 FOR UPDATE', bid['listing_id']
            )
        elif bid and bid['status'] == 'PLACED':
            query = '''
                SELECT * FROM listings
                WHERE nft_contract = $1 AND token_id = $2 AND status = 'ACTIVE'
            '''
            params = [event.contract_address, Decimal(event.token_id)]
            if event.seller:
                query += ' AND maker = $3'
                params.append(event.seller)
            query += ' ORDER BY price ASC LIMIT 1 FOR UPDATE'
            listing = await conn.fetchrow(query, *params)

        transition = plan_bid_accept(
            BidSnapshot.from_row(bid) if bid else None,
            ListingSnapshot.from_row(listing) if listing else None
        )

        bid = await conn.fetchrow(
            '''
            UPDATE bids
            SET status = $2,
                applied_events = applied_events | $3,
                listing_id = $4,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            ''',
            bid['id'], transition.next_status.value, int(transition.flag), listing['id']
        )

        if transition.has(Effect.SELL_LISTING):
            listing = await conn.fetchrow(
                '''
                UPDATE listings
                SET status = 'SOLD',
                    applied_events = applied_events | $2,
                    buyer = $3,
                    updated_at = now()
                WHERE id = $1
                RETURNING *
                ''',
                listing['id'], int(ListingEvent.SOLD), bid['bidder_address']
            )
        if transition.has(Effect.MARK_NONCE_USED):
            await self._mark_nonce(conn, listing)

        purchase = None
        volume = Decimal(0)
        if transition.has(Effect.RECORD_SALE):
            price = event.price or bid['amount']
            purchase = await self._record_purchase(
                conn, event, listing['id'], bid['bidder_address'], price, bid_id=bid['id']
            )
            volume = price

        collection = None
        if transition.has(Effect.RECOMPUTE_FLOOR) or volume:
            collection = await CollectionAggregator.recompute(conn, listing['nft_contract'], volume)

        return {
            'transition': transition.kind,
            'listing': format_listing(listing),
            'bid': format_bid(bid),
            'purchase': purchase,
            'collection': collection
        }

    async def _apply_bid_withdraw(self, conn, event: ChainEvent) -> Dict[str, Any]:
        row = await self._lock_bid_for_event(conn, event)
        transition = plan_bid_withdraw(BidSnapshot.from_row(row) if row else None)

        row = await conn.fetchrow(
            '''
            UPDATE bids
            SET status = $2,
                applied_events = applied_events | $3,
                updated_at = now()
            WHERE id = $1
            RETURNING *
            ''',
            row['id'], transition.next_status.value, int(transition.flag)
        )

        return {
            'transition': transition.kind,
            'listing': None,
            'bid': format_bid(row),
            'purchase': None,
            'collection': None
        }

    # Effects

    async def _mark_nonce(self, conn, listing) -> None:
        """Mark the listing's order nonce used, on the reconciliation transaction."""
        try:
            await self.nonces.mark_used(
                listing['maker'], listing['nonce'], str(listing['id']), conn=conn
            )
        except (Conflict, NotFound) as e:
            raise OrphanEvent(f"Order nonce of listing {listing['id']} diverged: {e}") from e

    async def _record_purchase(self, conn, event: ChainEvent, listing_id, buyer: str, price: Decimal, bid_id=None) -> Dict[str, Any]:
        row = await conn.fetchrow(
            '''
            INSERT INTO purchases (listing_id, bid_id, buyer_address, price, tx_hash)
            VALUES ($1, $2, $3, $4, $5)
            RETURNING *
            ''',
            listing_id, bid_id, buyer, price, event.tx_hash
        )
        return format_purchase(row)

    # Audit reads

    async def get_transaction(self, tx_hash: str) -> Dict[str, Any]:
        """Get the audit record of a transaction.

        Raises:
            NotFound: If the transaction was never recorded
        """
        tx_hash = normalize_tx_hash(tx_hash)
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            row = await conn.fetchrow('SELECT * FROM transactions WHERE tx_hash = $1', tx_hash)
        if not row:
            raise NotFound(f"Transaction {tx_hash} not found")
        return format_transaction(row)

    async def get_item_transactions(self, contract_address: str, token_id: Union[int, str]) -> List[Dict[str, Any]]:
        """Get the audit records of an item, newest first."""
        contract_address = normalize_address(contract_address, 'contract address')
        token_id = normalize_token_id(token_id)
        await self.ensure_pool()

        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                '''
                SELECT * FROM transactions
                WHERE contract_address = $1 AND token_id = $2
                ORDER BY created_at DESC
                ''',
                contract_address, Decimal(token_id)
            )
        return [format_transaction(row) for row in rows]


__all__ = [
    'EventReconciler',
    'format_transaction',
    'format_purchase',
    'APPLIED',
    'ORPHAN',
    'DUPLICATE',
]

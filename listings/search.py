""" Search listings in the database """
from typing import Optional, Dict, Any, Union
from decimal import Decimal
import logging

from chain import normalize_address, normalize_token_id
from database import get_pool
from errors import InvalidArgument

logger = logging.getLogger(__name__)

LISTING_STATUSES = ('ACTIVE', 'SOLD', 'CANCELLED')


async def search_listings(
        nft_contract: Optional[str] = None,
        maker: Optional[str] = None,
        token_id: Optional[Union[int, str]] = None,
        status: Optional[str] = None,
        min_price: Optional[Decimal] = None,
        max_price: Optional[Decimal] = None,
        limit: int = 50,
        offset: int = 0,
        pool=None
    ) -> Dict[str, Any]:
        """Search listings with various filters.

        Args:
            nft_contract: Optional collection contract to filter by
            maker: Optional seller address to filter by
            token_id: Optional token id, only meaningful with nft_contract
            status: Optional listing status to filter by
            min_price: Optional minimum price
            max_price: Optional maximum price
            limit: Maximum number of results to return (default: 50)
            offset: Number of results to skip (default: 0)

        Returns:
            Dict containing:
                - listings: List of matching listings, cheapest first
                - total_count: Total number of listings matching the filters
                - total_pages: Total number of pages
                - current_page: Current page number
        """
        # Local import, listings imports this module
        from listings import format_listing

        if limit < 1 or offset < 0:
            raise InvalidArgument("limit must be positive and offset not negative")
        if status is not None and status not in LISTING_STATUSES:
            raise InvalidArgument(f"Invalid listing status: {status!r}")

        if pool is None:
            pool = await get_pool()

        conditions = []
        params = []

        def add(condition: str, value: Any) -> None:
            params.append(value)
            conditions.append(condition.format(f"${len(params)}"))

        if nft_contract:
            add("nft_contract = {}", normalize_address(nft_contract, 'contract address'))
        if maker:
            add("maker = {}", normalize_address(maker, 'maker address'))
        if token_id is not None:
            add("token_id = {}", Decimal(normalize_token_id(token_id)))
        if status:
            add("status = {}", status)
        if min_price is not None:
            add("price >= {}", Decimal(str(min_price)))
        if max_price is not None:
            add("price <= {}", Decimal(str(max_price)))

        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        async with pool.acquire() as conn:
            total_count = await conn.fetchval(
                f"SELECT COUNT(*) FROM listings {where}",
                *params
            )
            rows = await conn.fetch(
                f"""
                SELECT * FROM listings {where}
                ORDER BY price ASC, created_at DESC
                LIMIT ${len(params) + 1} OFFSET ${len(params) + 2}
                """,
                *params, limit, offset
            )

        total_pages = (total_count + limit - 1) // limit
        return {
            'listings': [format_listing(row) for row in rows],
            'total_count': total_count,
            'total_pages': total_pages,
            'current_page': (offset // limit) + 1,
            'limit': limit,
            'offset': offset
        }

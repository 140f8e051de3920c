"""Listings API endpoints."""

from fastapi import APIRouter, Query
from typing import Optional, Union
from decimal import Decimal
from pydantic import BaseModel

from errors import MarketError
from listings import ListingManager
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/listings",
    tags=["Listings"]
)


class CreateListingRequest(BaseModel):
    """Request model for creating a listing from a verified signed order."""
    maker: str
    nft_contract: str
    token_id: Union[int, str]
    price: Decimal
    nonce: int
    signature: Optional[str] = None


@router.post("")
async def create_listing(request: CreateListingRequest):
    """Create a listing."""
    try:
        return await ListingManager().create_listing(
            maker=request.maker,
            nft_contract=request.nft_contract,
            token_id=request.token_id,
            price=request.price,
            nonce=request.nonce,
            signature=request.signature
        )
    except MarketError as e:
        raise http_error(e)


@router.get("")
async def list_listings(
    nft_contract: Optional[str] = Query(None),
    maker: Optional[str] = Query(None),
    token_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    min_price: Optional[Decimal] = Query(None),
    max_price: Optional[Decimal] = Query(None),
    per_page: int = Query(50, ge=1, le=200),
    page: int = Query(1, ge=1)
):
    """Search listings with pagination metadata."""
    try:
        offset = (page - 1) * per_page
        return await ListingManager().get_listings(
            nft_contract=nft_contract,
            maker=maker,
            token_id=token_id,
            status=status,
            min_price=min_price,
            max_price=max_price,
            limit=per_page,
            offset=offset
        )
    except MarketError as e:
        raise http_error(e)


@router.get("/{listing_id}")
async def get_listing(listing_id: str):
    """Get a listing by ID."""
    try:
        return await ListingManager().get_listing(listing_id)
    except MarketError as e:
        raise http_error(e)


@router.post("/{listing_id}/cancel")
async def cancel_listing(listing_id: str):
    """Cancel an active listing. The caller has verified the maker's signature."""
    try:
        return await ListingManager().cancel_listing(listing_id)
    except MarketError as e:
        raise http_error(e)

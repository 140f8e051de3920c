"""Bids API endpoints."""

from fastapi import APIRouter, Query
from typing import Optional, Union
from decimal import Decimal
from pydantic import BaseModel

from bids import BidManager
from errors import MarketError
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/bids",
    tags=["Bids"]
)


class PlaceBidRequest(BaseModel):
    """Request model for placing a bid."""
    contract_address: str
    token_id: Union[int, str]
    bidder_address: str
    amount: Decimal


class AcceptBidRequest(BaseModel):
    """Request model for accepting a bid."""
    seller_address: Optional[str] = None


@router.post("")
async def place_bid(request: PlaceBidRequest):
    """Place a bid on an item."""
    try:
        return await BidManager().place_bid(
            contract_address=request.contract_address,
            token_id=request.token_id,
            bidder_address=request.bidder_address,
            amount=request.amount
        )
    except MarketError as e:
        raise http_error(e)


@router.get("/by-item/{contract_address}/{token_id}")
async def get_item_bids(contract_address: str, token_id: str, status: Optional[str] = Query(None)):
    """Get the bids on an item."""
    try:
        bids = await BidManager().get_bids_for_item(contract_address, token_id, status)
        return {"bids": bids, "total_count": len(bids)}
    except MarketError as e:
        raise http_error(e)


@router.get("/{bid_id}")
async def get_bid(bid_id: str):
    """Get a bid by ID."""
    try:
        return await BidManager().get_bid(bid_id)
    except MarketError as e:
        raise http_error(e)


@router.post("/{bid_id}/accept")
async def accept_bid(bid_id: str, request: Optional[AcceptBidRequest] = None):
    """Accept a placed bid, selling the item's active listing to the bidder."""
    try:
        seller_address = request.seller_address if request else None
        return await BidManager().accept_bid(bid_id, seller_address=seller_address)
    except MarketError as e:
        raise http_error(e)


@router.post("/{bid_id}/withdraw")
async def withdraw_bid(bid_id: str):
    """Withdraw a placed bid."""
    try:
        return await BidManager().withdraw_bid(bid_id)
    except MarketError as e:
        raise http_error(e)

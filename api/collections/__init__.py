"""Collection registration and statistics endpoints."""

from typing import Optional

from fastapi import APIRouter
from pydantic import BaseModel

from aggregates import CollectionAggregator, CollectionRegistry
from errors import MarketError
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/collections",
    tags=["Collections"]
)


class RegisterCollectionRequest(BaseModel):
    """Request model for registering a collection contract."""
    contract_address: str
    name: Optional[str] = None


@router.post("")
async def register_collection(request: RegisterCollectionRequest):
    """Register a collection contract so its floor price and volume are tracked.

    Registering an already registered contract returns the existing row.
    """
    try:
        return await CollectionRegistry().register(request.contract_address, request.name)
    except MarketError as e:
        raise http_error(e)


@router.get("/{contract_address}/stats")
async def get_collection_stats(contract_address: str):
    """Get floor price, total volume and sales count of a collection."""
    try:
        return await CollectionAggregator().get_stats(contract_address)
    except MarketError as e:
        raise http_error(e)

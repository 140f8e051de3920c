"""Nonce API endpoints."""

from typing import Optional

from fastapi import APIRouter, Path, Query
from pydantic import BaseModel

from chain import normalize_address
from errors import MarketError
from nonces import NonceLedger
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/nonces",
    tags=["Nonces"]
)

# Nonces are stored as INT8
MAX_NONCE = 2 ** 63 - 1


class MarkUsedRequest(BaseModel):
    """Request model for marking a nonce used."""
    order_id: str


@router.get("/{signer}")
async def list_nonces(signer: str, status: Optional[str] = Query(None)):
    """List the nonces allocated to a signer, oldest first."""
    try:
        nonces = await NonceLedger().get_nonces(signer, status)
        return {"nonces": nonces, "total_count": len(nonces)}
    except MarketError as e:
        raise http_error(e)


@router.post("/{signer}")
async def allocate_nonce(signer: str):
    """Reserve the next nonce for a signer."""
    try:
        signer = normalize_address(signer, "signer address")
        nonce = await NonceLedger().next_nonce(signer)
        return {"signer_address": signer, "nonce": nonce}
    except MarketError as e:
        raise http_error(e)


@router.post("/{signer}/range")
async def allocate_nonce_range(signer: str, count: int = Query(...)):
    """Reserve a contiguous range of nonces for a signer."""
    try:
        return await NonceLedger().next_nonce_range(signer, count)
    except MarketError as e:
        raise http_error(e)


@router.get("/{signer}/{nonce}/status")
async def nonce_status(signer: str, nonce: int = Path(..., ge=0, le=MAX_NONCE)):
    """Get the status of an allocated nonce."""
    try:
        return await NonceLedger().status_of(signer, nonce)
    except MarketError as e:
        raise http_error(e)


@router.post("/{signer}/{nonce}/use")
async def mark_nonce_used(signer: str, request: MarkUsedRequest, nonce: int = Path(..., ge=0, le=MAX_NONCE)):
    """Mark a nonce used by an order."""
    try:
        return await NonceLedger().mark_used(signer, nonce, request.order_id)
    except MarketError as e:
        raise http_error(e)

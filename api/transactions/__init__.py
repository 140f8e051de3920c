"""Transaction audit endpoints."""

from fastapi import APIRouter

from errors import MarketError
from reconciler import EventReconciler
from ..errors import http_error

# Create router
router = APIRouter(
    prefix="/transactions",
    tags=["Transactions"]
)


@router.get("/by-item/{contract_address}/{token_id}")
async def get_item_transactions(contract_address: str, token_id: str):
    """Get the recorded transactions of an item, newest first."""
    try:
        transactions = await EventReconciler().get_item_transactions(contract_address, token_id)
        return {"transactions": transactions, "total_count": len(transactions)}
    except MarketError as e:
        raise http_error(e)


@router.get("/{tx_hash}")
async def get_transaction(tx_hash: str):
    """Get the audit record of a transaction."""
    try:
        return await EventReconciler().get_transaction(tx_hash)
    except MarketError as e:
        raise http_error(e)

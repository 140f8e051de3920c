"""Chain-facing types for the marketplace.

This module handles:
- Address validation and normalisation
- The verified chain event model delivered by the watcher
- The interface used to look up a verified event by transaction hash

Signature and receipt verification happen upstream; everything arriving here
is treated as already verified.
"""
import enum
import logging
import re
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional, Any

from pydantic import BaseModel, field_validator, model_validator
from web3 import Web3

from errors import InvalidArgument

logger = logging.getLogger(__name__)

TX_HASH_RE = re.compile(r'^0x[0-9a-fA-F]{64}$')


def normalize_address(address: Optional[str], field: str = 'address') -> str:
    """Return the checksum form of an account or contract address.

    Raises:
        InvalidArgument: If the value is not a valid address
    """
    if not isinstance(address, str) or not Web3.is_address(address):
        raise InvalidArgument(f"Invalid {field}: {address!r}")
    return Web3.to_checksum_address(address)


def normalize_tx_hash(tx_hash: str) -> str:
    if not isinstance(tx_hash, str) or not TX_HASH_RE.match(tx_hash):
        raise InvalidArgument(f"Invalid transaction hash: {tx_hash!r}")
    return tx_hash.lower()


def normalize_token_id(token_id: Any) -> int:
    """Token ids are unsigned 256 bit integers, accepted as int or decimal string."""
    try:
        value = int(str(token_id), 10)
    except (TypeError, ValueError):
        raise InvalidArgument(f"Invalid token id: {token_id!r}")
    if value < 0:
        raise InvalidArgument(f"Token id must not be negative: {token_id!r}")
    return value


class EventMethod(str, enum.Enum):
    """Marketplace contract methods whose events are reconciled."""
    LIST = 'listNft'
    PURCHASE = 'purchaseNft'
    CANCEL = 'cancelListing'
    BID_PLACED = 'BidPlaced'
    BID_ACCEPT = 'BidAccept'
    BID_WITHDRAW = 'BidWithdraw'

    @classmethod
    def parse(cls, value: str) -> 'EventMethod':
        try:
            return cls(value)
        except ValueError:
            raise InvalidArgument(f"Unknown event method: {value!r}")


# method -> counterparties that must be present on the event
REQUIRED_PARTIES = {
    EventMethod.LIST: ('seller',),
    EventMethod.PURCHASE: ('seller', 'buyer'),
    EventMethod.CANCEL: ('seller',),
    EventMethod.BID_PLACED: ('buyer',),
    EventMethod.BID_ACCEPT: ('buyer',),
    EventMethod.BID_WITHDRAW: ('buyer',),
}


class ChainEvent(BaseModel):
    """A verified marketplace contract event.

    ``buyer`` carries the bidder for bid events. ``nonce`` is the maker nonce
    embedded in the signed listing order, when the event exposes it.
    """
    tx_hash: str
    method: EventMethod
    contract_address: str
    token_id: int
    seller: Optional[str] = None
    buyer: Optional[str] = None
    price: Optional[Decimal] = None
    nonce: Optional[int] = None
    signature: Optional[str] = None
    from_address: Optional[str] = None
    to_address: Optional[str] = None
    block_hash: Optional[str] = None
    block_number: Optional[int] = None
    gas_used: Optional[Decimal] = None
    gas_price: Optional[Decimal] = None
    cumulative_gas_used: Optional[Decimal] = None
    txn_fee: Optional[Decimal] = None

    @field_validator('tx_hash')
    @classmethod
    def _check_tx_hash(cls, v: str) -> str:
        if not TX_HASH_RE.match(v):
            raise ValueError('tx_hash must be 0x followed by 64 hex characters')
        return v.lower()

    @field_validator('contract_address', 'seller', 'buyer', 'from_address', 'to_address')
    @classmethod
    def _check_address(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not Web3.is_address(v):
            raise ValueError(f'invalid address {v!r}')
        return Web3.to_checksum_address(v)

    @field_validator('token_id', 'nonce')
    @classmethod
    def _check_non_negative(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v < 0:
            raise ValueError('must not be negative')
        return v

    @field_validator('price')
    @classmethod
    def _check_price(cls, v: Optional[Decimal]) -> Optional[Decimal]:
        if v is not None and v <= 0:
            raise ValueError('price must be positive')
        return v

    @model_validator(mode='after')
    def _check_parties(self) -> 'ChainEvent':
        missing = [name for name in REQUIRED_PARTIES[self.method] if getattr(self, name) is None]
        if missing:
            raise ValueError(f"{self.method.value} event requires {', '.join(missing)}")
        if self.method == EventMethod.LIST:
            if self.nonce is None:
                raise ValueError('listNft event requires nonce')
            if self.price is None:
                raise ValueError('listNft event requires price')
        if self.method == EventMethod.BID_PLACED and self.price is None:
            raise ValueError('BidPlaced event requires price')
        return self

    @property
    def counterparty(self) -> Optional[str]:
        """Address that should hear about the outcome of this event."""
        if self.method in (EventMethod.LIST, EventMethod.CANCEL):
            return self.seller
        return self.buyer


class ChainLogFetcher(ABC):
    """Looks up a verified event by transaction hash.

    Implementations talk to a node or an indexer; none ships with the core.
    """

    @abstractmethod
    async def fetch_verified_event(self, tx_hash: str, method: EventMethod) -> Optional[ChainEvent]:
        """Return the verified event, or None when the chain has no such event."""
        raise NotImplementedError


__all__ = [
    'normalize_address',
    'normalize_tx_hash',
    'normalize_token_id',
    'EventMethod',
    'ChainEvent',
    'ChainLogFetcher',
    'REQUIRED_PARTIES',
]

"""Error taxonomy shared by the nonce ledger, state machine and reconciler.

Every error carries a machine readable ``code`` and the HTTP status the API
layer answers with. Anything that is not one of these is treated as a
transient infrastructure failure and propagated unchanged.
"""

from typing import Any, Dict


class MarketError(Exception):
    """Base class for marketplace errors."""
    code = 'MARKET_ERROR'
    http_status = 500

    def to_dict(self) -> Dict[str, Any]:
        return {'code': self.code, 'message': str(self)}


class InvalidArgument(MarketError):
    """Malformed input, rejected before any write."""
    code = 'INVALID_ARGUMENT'
    http_status = 400


class NotFound(MarketError):
    """Raised when a nonce, listing, bid or transaction does not exist."""
    code = 'NOT_FOUND'
    http_status = 404


class EventNotFound(NotFound):
    """The chain log fetcher has no verified event for a transaction."""
    code = 'EVENT_NOT_FOUND'


class Contention(MarketError):
    """Nonce allocation lost the race too many times. Safe to retry."""
    code = 'NONCE_CONTENTION'
    http_status = 503


class Conflict(MarketError):
    """Nonce already used by a different order (replay or client bug)."""
    code = 'NONCE_CONFLICT'
    http_status = 409


class AlreadyListed(MarketError):
    """An ACTIVE listing already exists for the item and maker."""
    code = 'ALREADY_LISTED'
    http_status = 409


class DuplicateBid(MarketError):
    """The bidder already has a PLACED bid on the item."""
    code = 'DUPLICATE_BID'
    http_status = 409


class InvalidState(MarketError):
    """Requested transition is not allowed from the entity's current state."""
    code = 'INVALID_STATE'
    http_status = 409


class DuplicateEvent(MarketError):
    """The chain event was already applied. Callers treat it as success."""
    code = 'DUPLICATE_EVENT'
    http_status = 200


class OrphanEvent(MarketError):
    """The chain event has no valid target; on-chain and off-chain state diverged."""
    code = 'ORPHAN_EVENT'
    http_status = 409

    def __init__(self, message: str, tx_hash: str = None):
        super().__init__(message)
        self.tx_hash = tx_hash


__all__ = [
    'MarketError',
    'InvalidArgument',
    'NotFound',
    'EventNotFound',
    'Contention',
    'Conflict',
    'AlreadyListed',
    'DuplicateBid',
    'InvalidState',
    'DuplicateEvent',
    'OrphanEvent',
]

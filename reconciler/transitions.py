"""Listing and bid transition table.

Pure functions mapping (current state, chain event) to the transition the
reconciler must perform. They never touch the database, so every rule can be
checked without one. A rule either returns a ``Transition`` or raises
``DuplicateEvent`` (the event's flag is already set) or ``OrphanEvent`` (the
event has no valid target in the current state).

Each listing and bid carries a set of applied event flags. A flag is set at
most once and statuses only move forward, which makes the outcome independent
of the order in which events arrive.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from errors import DuplicateEvent, OrphanEvent


class ListingStatus(str, enum.Enum):
    ACTIVE = 'ACTIVE'
    SOLD = 'SOLD'
    CANCELLED = 'CANCELLED'


class BidStatus(str, enum.Enum):
    PLACED = 'PLACED'
    ACCEPTED = 'ACCEPTED'
    WITHDRAWN = 'WITHDRAWN'


class ListingEvent(enum.IntFlag):
    LISTED = 1
    SOLD = 2
    CANCELLED = 4


class BidEvent(enum.IntFlag):
    PLACED = 1
    ACCEPTED = 2
    WITHDRAWN = 4


class Effect(str, enum.Enum):
    """Side effects the reconciler runs after writing the new state."""
    MARK_NONCE_USED = 'mark_nonce_used'
    RECORD_SALE = 'record_sale'
    RECOMPUTE_FLOOR = 'recompute_floor'
    SELL_LISTING = 'sell_listing'


CREATE = 'create'
ADVANCE = 'advance'
CONFIRM = 'confirm'


@dataclass(frozen=True)
class ListingSnapshot:
    id: str
    status: ListingStatus
    applied: ListingEvent
    nonce: int
    maker: str
    price: Decimal

    @classmethod
    def from_row(cls, row) -> 'ListingSnapshot':
        return cls(
            id=str(row['id']),
            status=ListingStatus(row['status']),
            applied=ListingEvent(row['applied_events']),
            nonce=row['nonce'],
            maker=row['maker'],
            price=row['price']
        )


@dataclass(frozen=True)
class BidSnapshot:
    id: str
    status: BidStatus
    applied: BidEvent
    listing_id: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> 'BidSnapshot':
        return cls(
            id=str(row['id']),
            status=BidStatus(row['status']),
            applied=BidEvent(row['applied_events']),
            listing_id=str(row['listing_id']) if row['listing_id'] else None
        )


@dataclass(frozen=True)
class Transition:
    """What to write.

    ``kind`` is CREATE for a new row, ADVANCE when the status moves and
    CONFIRM when only the flag is set on a row already moved through the API.
    """
    kind: str
    next_status: str
    flag: int
    effects: Tuple[Effect, ...] = ()

    def has(self, effect: Effect) -> bool:
        return effect in self.effects


def plan_list(listing: Optional[ListingSnapshot], nonce: int) -> Transition:
    """listNft: create the listing, or confirm one created through the API."""
    if listing is None:
        return Transition(
            CREATE, ListingStatus.ACTIVE, ListingEvent.LISTED,
            (Effect.MARK_NONCE_USED, Effect.RECOMPUTE_FLOOR)
        )
    if listing.nonce != nonce:
        raise OrphanEvent(
            f"Listing {listing.id} is already active for this item with nonce {listing.nonce}"
        )
    if ListingEvent.LISTED in listing.applied:
        raise DuplicateEvent(f"List event already applied to listing {listing.id}")
    if listing.status != ListingStatus.ACTIVE:
        raise OrphanEvent(f"Listing {listing.id} is {listing.status.value}, cannot confirm list")
    return Transition(
        CONFIRM, ListingStatus.ACTIVE, ListingEvent.LISTED,
        (Effect.MARK_NONCE_USED,)
    )


def plan_purchase(listing: Optional[ListingSnapshot]) -> Transition:
    """purchaseNft: an ACTIVE listing is sold."""
    if listing is None:
        raise OrphanEvent("Purchase event has no listing")
    if ListingEvent.SOLD in listing.applied:
        raise DuplicateEvent(f"Purchase event already applied to listing {listing.id}")
    if listing.status != ListingStatus.ACTIVE:
        raise OrphanEvent(f"Listing {listing.id} is {listing.status.value}, cannot be purchased")
    return Transition(
        ADVANCE, ListingStatus.SOLD, ListingEvent.SOLD,
        (Effect.MARK_NONCE_USED, Effect.RECORD_SALE, Effect.RECOMPUTE_FLOOR)
    )


def plan_cancel(listing: Optional[ListingSnapshot]) -> Transition:
    """cancelListing: cancel an ACTIVE listing, or confirm an API cancel."""
    if listing is None:
        raise OrphanEvent("Cancel event has no listing")
    if ListingEvent.CANCELLED in listing.applied:
        raise DuplicateEvent(f"Cancel event already applied to listing {listing.id}")
    if listing.status == ListingStatus.ACTIVE:
        return Transition(
            ADVANCE, ListingStatus.CANCELLED, ListingEvent.CANCELLED,
            (Effect.RECOMPUTE_FLOOR,)
        )
    if listing.status == ListingStatus.CANCELLED:
        return Transition(CONFIRM, ListingStatus.CANCELLED, ListingEvent.CANCELLED)
    raise OrphanEvent(f"Listing {listing.id} is {listing.status.value}, cannot be cancelled")


def plan_bid_placed(bid: Optional[BidSnapshot]) -> Transition:
    """BidPlaced: create the bid, or confirm one placed through the API.

    ``bid`` is the bidder's open bid on the item, if any.
    """
    if bid is None:
        return Transition(CREATE, BidStatus.PLACED, BidEvent.PLACED)
    if BidEvent.PLACED in bid.applied:
        raise DuplicateEvent(f"Place event already applied to bid {bid.id}")
    if bid.status != BidStatus.PLACED:
        raise OrphanEvent(f"Bid {bid.id} is {bid.status.value}, cannot confirm placement")
    return Transition(CONFIRM, BidStatus.PLACED, BidEvent.PLACED)


def plan_bid_accept(bid: Optional[BidSnapshot], listing: Optional[ListingSnapshot]) -> Transition:
    """BidAccept: the bid is accepted and the listing it targets is sold.

    ``listing`` is the ACTIVE listing for the item when the bid is still
    PLACED, or the listing the bid was accepted into through the API.
    """
    if bid is None:
        raise OrphanEvent("Accept event has no bid")
    if BidEvent.ACCEPTED in bid.applied:
        raise DuplicateEvent(f"Accept event already applied to bid {bid.id}")
    if bid.status == BidStatus.ACCEPTED:
        if listing is None:
            raise OrphanEvent(f"Bid {bid.id} was accepted without a listing")
        return Transition(
            CONFIRM, BidStatus.ACCEPTED, BidEvent.ACCEPTED,
            (Effect.SELL_LISTING, Effect.MARK_NONCE_USED, Effect.RECORD_SALE, Effect.RECOMPUTE_FLOOR)
        )
    if bid.status != BidStatus.PLACED:
        raise OrphanEvent(f"Bid {bid.id} is {bid.status.value}, cannot be accepted")
    if BidEvent.PLACED not in bid.applied:
        raise OrphanEvent(f"Bid {bid.id} accepted before its place event was applied")
    if listing is None or listing.status != ListingStatus.ACTIVE:
        raise OrphanEvent(f"Bid {bid.id} has no active listing to accept into")
    return Transition(
        ADVANCE, BidStatus.ACCEPTED, BidEvent.ACCEPTED,
        (Effect.SELL_LISTING, Effect.MARK_NONCE_USED, Effect.RECORD_SALE, Effect.RECOMPUTE_FLOOR)
    )


def plan_bid_withdraw(bid: Optional[BidSnapshot]) -> Transition:
    """BidWithdraw: withdraw a placed bid, or confirm an API withdrawal."""
    if bid is None:
        raise OrphanEvent("Withdraw event has no bid")
    if BidEvent.WITHDRAWN in bid.applied:
        raise DuplicateEvent(f"Withdraw event already applied to bid {bid.id}")
    if bid.status == BidStatus.WITHDRAWN:
        return Transition(CONFIRM, BidStatus.WITHDRAWN, BidEvent.WITHDRAWN)
    if bid.status != BidStatus.PLACED:
        raise OrphanEvent(f"Bid {bid.id} is {bid.status.value}, cannot be withdrawn")
    if BidEvent.PLACED not in bid.applied:
        raise OrphanEvent(f"Bid {bid.id} withdrawn before its place event was applied")
    return Transition(ADVANCE, BidStatus.WITHDRAWN, BidEvent.WITHDRAWN)

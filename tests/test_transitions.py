"""Tests for the listing and bid transition table."""

from decimal import Decimal

import pytest

from errors import DuplicateEvent, OrphanEvent
from reconciler.transitions import (
    CREATE, ADVANCE, CONFIRM,
    Effect,
    ListingStatus, BidStatus,
    ListingEvent, BidEvent,
    ListingSnapshot, BidSnapshot,
    plan_list, plan_purchase, plan_cancel,
    plan_bid_placed, plan_bid_accept, plan_bid_withdraw,
)

MAKER = "0x00000000000000000000000000000000000000aA"


def listing(status=ListingStatus.ACTIVE, applied=ListingEvent(0), nonce=0):
    return ListingSnapshot(
        id="listing-1", status=status, applied=applied,
        nonce=nonce, maker=MAKER, price=Decimal("5")
    )


def bid(status=BidStatus.PLACED, applied=BidEvent.PLACED, listing_id=None):
    return BidSnapshot(id="bid-1", status=status, applied=applied, listing_id=listing_id)


# listNft

def test_list_creates_listing_when_none_exists():
    transition = plan_list(None, 0)
    assert transition.kind == CREATE
    assert transition.next_status == ListingStatus.ACTIVE
    assert transition.flag == ListingEvent.LISTED
    assert transition.has(Effect.MARK_NONCE_USED)
    assert transition.has(Effect.RECOMPUTE_FLOOR)


def test_list_confirms_listing_created_through_api():
    transition = plan_list(listing(), 0)
    assert transition.kind == CONFIRM
    assert transition.has(Effect.MARK_NONCE_USED)
    assert not transition.has(Effect.RECOMPUTE_FLOOR)


def test_list_twice_is_duplicate():
    with pytest.raises(DuplicateEvent):
        plan_list(listing(applied=ListingEvent.LISTED), 0)


def test_list_with_other_nonce_while_active_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_list(listing(nonce=3), 4)


def test_list_for_cancelled_listing_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_list(listing(status=ListingStatus.CANCELLED), 0)


# purchaseNft

def test_purchase_sells_active_listing():
    transition = plan_purchase(listing(applied=ListingEvent.LISTED))
    assert transition.kind == ADVANCE
    assert transition.next_status == ListingStatus.SOLD
    assert transition.flag == ListingEvent.SOLD
    assert transition.has(Effect.RECORD_SALE)
    assert transition.has(Effect.MARK_NONCE_USED)
    assert transition.has(Effect.RECOMPUTE_FLOOR)


def test_purchase_without_listing_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_purchase(None)


def test_purchase_after_sale_is_duplicate():
    sold = listing(status=ListingStatus.SOLD, applied=ListingEvent.LISTED | ListingEvent.SOLD)
    with pytest.raises(DuplicateEvent):
        plan_purchase(sold)


@pytest.mark.parametrize("status", [ListingStatus.CANCELLED, ListingStatus.SOLD])
def test_purchase_of_closed_listing_is_orphan(status):
    with pytest.raises(OrphanEvent):
        plan_purchase(listing(status=status, applied=ListingEvent.LISTED))


# cancelListing

def test_cancel_moves_active_listing_to_cancelled():
    transition = plan_cancel(listing())
    assert transition.kind == ADVANCE
    assert transition.next_status == ListingStatus.CANCELLED
    assert transition.has(Effect.RECOMPUTE_FLOOR)


def test_cancel_confirms_api_cancel():
    transition = plan_cancel(listing(status=ListingStatus.CANCELLED))
    assert transition.kind == CONFIRM
    assert transition.effects == ()


def test_cancel_twice_is_duplicate():
    cancelled = listing(status=ListingStatus.CANCELLED, applied=ListingEvent.CANCELLED)
    with pytest.raises(DuplicateEvent):
        plan_cancel(cancelled)


def test_cancel_of_sold_listing_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_cancel(listing(status=ListingStatus.SOLD))


# BidPlaced

def test_bid_placed_creates_bid():
    transition = plan_bid_placed(None)
    assert transition.kind == CREATE
    assert transition.next_status == BidStatus.PLACED
    assert transition.flag == BidEvent.PLACED


def test_bid_placed_confirms_api_bid():
    assert plan_bid_placed(bid(applied=BidEvent(0))).kind == CONFIRM


def test_bid_placed_twice_is_duplicate():
    with pytest.raises(DuplicateEvent):
        plan_bid_placed(bid())


# BidAccept

def test_accept_requires_bid():
    with pytest.raises(OrphanEvent):
        plan_bid_accept(None, listing())


def test_accept_before_place_event_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_bid_accept(bid(applied=BidEvent(0)), listing())


def test_accept_without_active_listing_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_bid_accept(bid(), None)
    with pytest.raises(OrphanEvent):
        plan_bid_accept(bid(), listing(status=ListingStatus.SOLD))


def test_accept_sells_listing():
    transition = plan_bid_accept(bid(), listing())
    assert transition.kind == ADVANCE
    assert transition.next_status == BidStatus.ACCEPTED
    assert transition.flag == BidEvent.ACCEPTED
    for effect in (Effect.SELL_LISTING, Effect.MARK_NONCE_USED, Effect.RECORD_SALE, Effect.RECOMPUTE_FLOOR):
        assert transition.has(effect)


def test_accept_confirms_api_accept_with_sale():
    accepted = bid(status=BidStatus.ACCEPTED, listing_id="listing-1")
    transition = plan_bid_accept(accepted, listing(status=ListingStatus.SOLD))
    assert transition.kind == CONFIRM
    assert transition.has(Effect.RECORD_SALE)


def test_accept_twice_is_duplicate():
    accepted = bid(status=BidStatus.ACCEPTED, applied=BidEvent.PLACED | BidEvent.ACCEPTED)
    with pytest.raises(DuplicateEvent):
        plan_bid_accept(accepted, listing(status=ListingStatus.SOLD))


def test_accept_withdrawn_bid_is_orphan():
    withdrawn = bid(status=BidStatus.WITHDRAWN, applied=BidEvent.PLACED | BidEvent.WITHDRAWN)
    with pytest.raises(OrphanEvent):
        plan_bid_accept(withdrawn, listing())


# BidWithdraw

def test_withdraw_placed_bid():
    transition = plan_bid_withdraw(bid())
    assert transition.kind == ADVANCE
    assert transition.next_status == BidStatus.WITHDRAWN


def test_withdraw_confirms_api_withdrawal():
    assert plan_bid_withdraw(bid(status=BidStatus.WITHDRAWN)).kind == CONFIRM


def test_withdraw_twice_is_duplicate():
    withdrawn = bid(status=BidStatus.WITHDRAWN, applied=BidEvent.PLACED | BidEvent.WITHDRAWN)
    with pytest.raises(DuplicateEvent):
        plan_bid_withdraw(withdrawn)


def test_withdraw_accepted_bid_is_orphan():
    accepted = bid(status=BidStatus.ACCEPTED, applied=BidEvent.PLACED | BidEvent.ACCEPTED)
    with pytest.raises(OrphanEvent):
        plan_bid_withdraw(accepted)


def test_withdraw_without_bid_is_orphan():
    with pytest.raises(OrphanEvent):
        plan_bid_withdraw(None)


def test_snapshot_from_row():
    row = {
        'id': 'abc', 'status': 'ACTIVE', 'applied_events': 1,
        'nonce': 7, 'maker': MAKER, 'price': Decimal('2.5')
    }
    snapshot = ListingSnapshot.from_row(row)
    assert snapshot.status == ListingStatus.ACTIVE
    assert ListingEvent.LISTED in snapshot.applied
    assert ListingEvent.SOLD not in snapshot.applied

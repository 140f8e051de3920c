"""Tests for the REST API error mapping and event delivery answers."""

from decimal import Decimal
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from fastapi.testclient import TestClient
from fastapi import WebSocketDisconnect

from api import app
from errors import (
    InvalidArgument, NotFound, Contention, Conflict,
    AlreadyListed, InvalidState, DuplicateEvent, OrphanEvent, EventNotFound
)
from notifications import NotificationDispatcher, TOPIC_EVENT_APPLIED, TOPIC_EVENT_ORPHANED

from conftest import random_address, random_tx_hash

client = TestClient(app)


@pytest.fixture
def notifier():
    original = app.state.notifier
    app.state.notifier = AsyncMock(spec=NotificationDispatcher)
    yield app.state.notifier
    app.state.notifier = original


@pytest.fixture
def chain_fetcher():
    app.state.chain_fetcher = object()
    yield app.state.chain_fetcher
    app.state.chain_fetcher = None


def purchase_event(**overrides):
    event = {
        "tx_hash": random_tx_hash(),
        "method": "purchaseNft",
        "contract_address": random_address(),
        "token_id": 1,
        "seller": random_address(),
        "buyer": random_address(),
        "price": "1.5"
    }
    event.update(overrides)
    return event


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


# Nonces

def test_allocate_nonce():
    signer = random_address()
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.next_nonce = AsyncMock(return_value=4)
        response = client.post(f"/nonces/{signer.lower()}")

    assert response.status_code == 200
    assert response.json() == {"signer_address": signer, "nonce": 4}


def test_allocate_nonce_rejects_bad_signer():
    response = client.post("/nonces/0x1234")
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_ARGUMENT"


@pytest.mark.parametrize("error,status_code,code", [
    (InvalidArgument("count must be between 1 and 50, got 0"), 400, "INVALID_ARGUMENT"),
    (Contention("gave up"), 503, "NONCE_CONTENTION"),
])
def test_nonce_range_errors(error, status_code, code):
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.next_nonce_range = AsyncMock(side_effect=error)
        response = client.post(f"/nonces/{random_address()}/range", params={"count": 0})

    assert response.status_code == status_code
    assert response.json()["detail"]["code"] == code


def test_nonce_status_not_found():
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.status_of = AsyncMock(side_effect=NotFound("never allocated"))
        response = client.get(f"/nonces/{random_address()}/7/status")

    assert response.status_code == 404
    assert response.json()["detail"] == {"code": "NOT_FOUND", "message": "never allocated"}


def test_mark_nonce_used_conflict():
    signer = random_address()
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.mark_used = AsyncMock(side_effect=Conflict("already used"))
        response = client.post(f"/nonces/{signer}/0/use", json={"order_id": "order-2"})

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "NONCE_CONFLICT"
    ledger.return_value.mark_used.assert_awaited_once_with(signer, 0, "order-2")


def test_list_nonces():
    signer = random_address()
    rows = [{"signer_address": signer, "nonce": 0, "status": "USED"}]
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.get_nonces = AsyncMock(return_value=rows)
        response = client.get(f"/nonces/{signer}", params={"status": "USED"})

    assert response.status_code == 200
    assert response.json() == {"nonces": rows, "total_count": 1}
    ledger.return_value.get_nonces.assert_awaited_once_with(signer, "USED")


@pytest.mark.parametrize("nonce", [-1, 2 ** 63])
def test_nonce_outside_int8_is_rejected(nonce):
    signer = random_address()
    with patch('api.nonces.NonceLedger') as ledger:
        ledger.return_value.status_of = AsyncMock()
        ledger.return_value.mark_used = AsyncMock()
        status_response = client.get(f"/nonces/{signer}/{nonce}/status")
        use_response = client.post(f"/nonces/{signer}/{nonce}/use", json={"order_id": "order-1"})

    assert status_response.status_code == 422
    assert use_response.status_code == 422
    ledger.return_value.status_of.assert_not_awaited()
    ledger.return_value.mark_used.assert_not_awaited()


# Listings and bids

def test_create_listing_already_listed():
    body = {
        "maker": random_address(),
        "nft_contract": random_address(),
        "token_id": "12",
        "price": "2.5",
        "nonce": 0
    }
    with patch('api.listings.ListingManager') as manager:
        manager.return_value.create_listing = AsyncMock(side_effect=AlreadyListed("active listing exists"))
        response = client.post("/listings", json=body)

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "ALREADY_LISTED"


def test_list_listings_translates_pages():
    with patch('api.listings.ListingManager') as manager:
        manager.return_value.get_listings = AsyncMock(return_value={"listings": [], "total_count": 0})
        response = client.get("/listings", params={"per_page": 10, "page": 3, "status": "ACTIVE"})

    assert response.status_code == 200
    kwargs = manager.return_value.get_listings.await_args.kwargs
    assert kwargs["limit"] == 10
    assert kwargs["offset"] == 20
    assert kwargs["status"] == "ACTIVE"


def test_cancel_listing_invalid_state():
    with patch('api.listings.ListingManager') as manager:
        manager.return_value.cancel_listing = AsyncMock(side_effect=InvalidState("listing is SOLD"))
        response = client.post("/listings/abc/cancel")

    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_STATE"


def test_accept_bid_passes_seller():
    seller = random_address()
    with patch('api.bids.BidManager') as manager:
        manager.return_value.accept_bid = AsyncMock(return_value={"bid": {}, "listing": {}})
        response = client.post("/bids/bid-1/accept", json={"seller_address": seller})

    assert response.status_code == 200
    manager.return_value.accept_bid.assert_awaited_once_with("bid-1", seller_address=seller)


def test_item_bids_are_counted():
    with patch('api.bids.BidManager') as manager:
        manager.return_value.get_bids_for_item = AsyncMock(return_value=[{"id": "a"}, {"id": "b"}])
        response = client.get(f"/bids/by-item/{random_address()}/5")

    assert response.status_code == 200
    assert response.json()["total_count"] == 2


# Events

def test_applied_event_notifies_counterparty(notifier):
    event = purchase_event()
    result = {"tx_hash": event["tx_hash"], "method": "purchaseNft", "outcome": "applied",
              "recipient": event["buyer"]}
    with patch('api.events.EventReconciler') as reconciler:
        reconciler.return_value.apply = AsyncMock(return_value=result)
        response = client.post("/events", json=event)

    assert response.status_code == 200
    assert response.json()["outcome"] == "applied"
    notifier.notify.assert_awaited_once_with(event["buyer"], TOPIC_EVENT_APPLIED, result, True)


def test_duplicate_event_is_success(notifier):
    event = purchase_event()
    with patch('api.events.EventReconciler') as reconciler:
        reconciler.return_value.apply = AsyncMock(side_effect=DuplicateEvent("already applied"))
        response = client.post("/events", json=event)

    assert response.status_code == 200
    assert response.json() == {
        "tx_hash": event["tx_hash"],
        "method": "purchaseNft",
        "outcome": "duplicate",
        "message": "already applied"
    }
    notifier.notify.assert_not_awaited()


def test_orphan_event_is_conflict(notifier):
    event = purchase_event()
    with patch('api.events.EventReconciler') as reconciler:
        reconciler.return_value.apply = AsyncMock(side_effect=OrphanEvent("no active listing"))
        response = client.post("/events", json=event)

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "ORPHAN_EVENT"
    assert detail["outcome"] == "orphan"
    assert detail["tx_hash"] == event["tx_hash"]
    args = notifier.notify.await_args.args
    assert args[0] == event["buyer"]
    assert args[1] == TOPIC_EVENT_ORPHANED
    assert args[3] is False


def test_malformed_event_is_rejected():
    response = client.post("/events", json=purchase_event(buyer=None))
    assert response.status_code == 422


def test_refresh_without_fetcher_is_unavailable():
    response = client.post(f"/events/purchaseNft/{random_tx_hash()}/refresh")
    assert response.status_code == 503
    assert response.json()["detail"]["code"] == "FETCHER_UNAVAILABLE"


def test_refresh_unknown_method(chain_fetcher):
    response = client.post(f"/events/transfer/{random_tx_hash()}/refresh")
    assert response.status_code == 400


def test_refresh_event_not_found(chain_fetcher):
    with patch('api.events.EventReconciler') as reconciler:
        reconciler.return_value.refresh = AsyncMock(side_effect=EventNotFound("no such event"))
        response = client.post(f"/events/BidAccept/{random_tx_hash()}/refresh")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "EVENT_NOT_FOUND"
    reconciler.assert_called_once_with(fetcher=chain_fetcher)


# Audit and stats

def test_transaction_not_found():
    with patch('api.transactions.EventReconciler') as reconciler:
        reconciler.return_value.get_transaction = AsyncMock(side_effect=NotFound("unknown transaction"))
        response = client.get(f"/transactions/{random_tx_hash()}")

    assert response.status_code == 404


def test_collection_stats():
    stats = {"contract_address": random_address(), "floor_price": "3", "total_volume": "0", "sales_count": 0}
    with patch('api.collections.CollectionAggregator') as aggregator:
        aggregator.return_value.get_stats = AsyncMock(return_value=stats)
        response = client.get(f"/collections/{stats['contract_address']}/stats")

    assert response.status_code == 200
    assert response.json() == stats


def test_register_collection():
    contract = random_address()
    collection = {"id": "c-1", "contract_address": contract, "name": "Apes", "floor_price": None,
                  "total_volume": "0", "sales_count": 0, "updated_at": None}
    with patch('api.collections.CollectionRegistry') as registry:
        registry.return_value.register = AsyncMock(return_value=collection)
        response = client.post("/collections", json={"contract_address": contract, "name": "Apes"})

    assert response.status_code == 200
    assert response.json() == collection
    registry.return_value.register.assert_awaited_once_with(contract, "Apes")


def test_register_collection_rejects_bad_contract():
    response = client.post("/collections", json={"contract_address": "0x12"})
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_ARGUMENT"


@pytest.mark.asyncio
async def test_registered_collection_tracks_listings(db_pool):
    contract, maker = random_address(), random_address()
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://market") as http:
        response = await http.get(f"/collections/{contract}/stats")
        assert response.status_code == 404

        response = await http.post("/collections", json={"contract_address": contract, "name": "Test"})
        assert response.status_code == 200
        assert response.json()["floor_price"] is None

        for token_id, price in ((1, "5"), (2, "3")):
            nonce = (await http.post(f"/nonces/{maker}")).json()["nonce"]
            response = await http.post("/listings", json={
                "maker": maker, "nft_contract": contract, "token_id": token_id,
                "price": price, "nonce": nonce
            })
            assert response.status_code == 200

        stats = (await http.get(f"/collections/{contract}/stats")).json()
        assert Decimal(stats["floor_price"]) == Decimal("3")

        nonces = (await http.get(f"/nonces/{maker}")).json()
        assert [n["nonce"] for n in nonces["nonces"]] == [0, 1]


# Notifications socket

def test_notification_socket_survives_malformed_message():
    with client.websocket_connect(f"/ws/notifications/{random_address()}") as socket:
        socket.send_text("not json")
        assert socket.receive_json()["type"] == "error"

        socket.send_json({"type": "ping"})
        assert socket.receive_json()["type"] == "pong"


def test_notification_socket_rejects_bad_address():
    with pytest.raises(WebSocketDisconnect) as excinfo:
        with client.websocket_connect("/ws/notifications/0x12") as socket:
            socket.receive_json()
    assert excinfo.value.code == 1008

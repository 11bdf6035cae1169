"""
Tests for the broker HTTP API.

These tests run the FastAPI app (with its lifespan, so the dispatcher is
live) against a temporary database.
"""

import time

import pytest
from fastapi.testclient import TestClient

from api.main import create_app
from shared.config import BrokerConfig


@pytest.fixture
def api_client(config: BrokerConfig):
    """Test client with a fresh broker and the default handlers bound."""
    app = create_app(config=config, configure_logging=False)
    with TestClient(app) as client:
        yield client


def wait_for(predicate, timeout: float = 5.0):
    """Poll until predicate() is truthy; returns its last value."""
    deadline = time.monotonic() + timeout
    while True:
        value = predicate()
        if value or time.monotonic() >= deadline:
            return value
        time.sleep(0.02)


ALICE = {
    "customer_id": "cust-001",
    "customer_name": "Alice Johnson",
    "customer_email": "alice@example.com",
    "amount": 42.5,
}


class TestHealthEndpoint:
    """Tests for the health check endpoint."""

    def test_health_check(self, api_client):
        """Test that health endpoint returns healthy with delivery counts."""
        response = api_client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["deliveries"]["Pending"] == 0


class TestEventsEndpoint:
    """Tests for appending and reading events."""

    def test_append_event(self, api_client):
        response = api_client.post(
            "/events", json={"orderId": "ord-001", "kind": "Created", "payload": ALICE}
        )

        assert response.status_code == 201
        data = response.json()
        assert data["orderId"] == "ord-001"
        assert data["sequence"] == 1
        assert data["kind"] == "Created"
        assert data["payload"] == ALICE
        assert "eventId" in data

    def test_sequence_conflict(self, api_client):
        api_client.post("/events", json={"orderId": "ord-001", "kind": "Created"})
        response = api_client.post(
            "/events", json={"orderId": "ord-001", "kind": "PaymentRequested", "sequence": 1}
        )

        assert response.status_code == 409
        assert "expected 2" in response.json()["detail"]

    @pytest.mark.parametrize(
        "body",
        [
            {"orderId": "ord-001", "kind": "Shipped"},
            {"orderId": "", "kind": "Created"},
            {"kind": "Created"},
            {"orderId": "ord-001", "kind": "Created", "sequence": 0},
        ],
    )
    def test_invalid_event(self, api_client, body):
        response = api_client.post("/events", json=body)
        assert response.status_code == 400

    def test_read_log_with_cursor(self, api_client):
        for i in range(3):
            api_client.post("/events", json={"orderId": f"ord-{i}", "kind": "PaymentRequested"})

        first = api_client.get("/events", params={"cursor": 0, "limit": 2}).json()
        rest = api_client.get("/events", params={"cursor": first["nextCursor"]}).json()

        assert [e["orderId"] for e in first["events"]] == ["ord-0", "ord-1"]
        assert [e["orderId"] for e in rest["events"]] == ["ord-2"]

    def test_read_order_events(self, api_client):
        api_client.post("/events", json={"orderId": "ord-009", "kind": "PaymentRequested"})
        api_client.post("/events", json={"orderId": "ord-009", "kind": "PaymentFailed"})

        response = api_client.get("/orders/ord-009/events")

        assert response.status_code == 200
        assert [e["sequence"] for e in response.json()] == [1, 2]


class TestSubscriptionsEndpoint:
    """Tests for subscription management."""

    def test_register_and_list(self, api_client):
        response = api_client.post(
            "/subscriptions",
            json={
                "handlerId": "payment",
                "eventKinds": ["Created"],
                "deliveryPolicy": {"maxAttempts": 2, "backoffBase": 0.01, "backoffCap": 0.02},
            },
        )

        assert response.status_code == 200
        assert response.json()["deliveryPolicy"]["maxAttempts"] == 2

        listed = api_client.get("/subscriptions").json()
        assert [s["handlerId"] for s in listed] == ["payment"]
        assert listed[0]["eventKinds"] == ["Created"]

    def test_unbound_handler_is_not_found(self, api_client):
        response = api_client.post(
            "/subscriptions", json={"handlerId": "ghost", "eventKinds": ["Created"]}
        )
        assert response.status_code == 404

    def test_empty_kinds_rejected(self, api_client):
        response = api_client.post(
            "/subscriptions", json={"handlerId": "payment", "eventKinds": []}
        )
        assert response.status_code == 400

    def test_unregister(self, api_client):
        api_client.post("/subscriptions", json={"handlerId": "payment", "eventKinds": ["Created"]})

        response = api_client.delete("/subscriptions/payment")

        assert response.status_code == 200
        assert response.json() == {"handlerId": "payment", "deadLettered": 0}
        assert api_client.delete("/subscriptions/payment").status_code == 404


class TestDeliveryEndpoints:
    """Delivery audit, dead letters and replay through HTTP."""

    def test_order_is_charged_and_audited(self, api_client):
        api_client.post("/subscriptions", json={"handlerId": "payment", "eventKinds": ["Created"]})
        event = api_client.post(
            "/events", json={"orderId": "ord-001", "kind": "Created", "payload": ALICE}
        ).json()

        def delivered():
            records = api_client.get(f"/deliveries/{event['eventId']}").json()
            return records if records and records[0]["state"] == "Delivered" else None

        records = wait_for(delivered)
        assert records is not None
        assert records[0]["handlerId"] == "payment"
        assert records[0]["attempts"] == 1

        kinds = [e["kind"] for e in api_client.get("/orders/ord-001/events").json()]
        assert kinds == ["Created", "PaymentSucceeded"]

    def test_dead_letter_and_retry(self, api_client):
        api_client.post("/subscriptions", json={"handlerId": "payment", "eventKinds": ["Created"]})
        event = api_client.post(
            "/events", json={"orderId": "ord-002", "kind": "Created", "payload": {"note": "no amount"}}
        ).json()

        dead = wait_for(lambda: api_client.get("/deadletters").json())
        assert [d["eventId"] for d in dead] == [event["eventId"]]

        response = api_client.post(
            f"/deadletters/{event['eventId']}/retry", params={"handlerId": "payment"}
        )
        assert response.status_code == 200
        assert response.json()[0]["attempts"] == 0

    def test_retry_without_dead_letters(self, api_client):
        event = api_client.post("/events", json={"orderId": "ord-003", "kind": "Created"}).json()
        response = api_client.post(f"/deadletters/{event['eventId']}/retry")
        assert response.status_code == 404

    def test_unknown_event(self, api_client):
        response = api_client.get("/deliveries/00000000-0000-0000-0000-000000000000")
        assert response.status_code == 404
        assert api_client.get("/deliveries/not-a-uuid").status_code == 400

    def test_replay(self, api_client):
        api_client.post("/events", json={"orderId": "ord-004", "kind": "PaymentRequested", "payload": {"amount": 3}})
        wait_for(lambda: api_client.get("/health").json()["deliveries"]["cursor"] >= 1)
        api_client.post(
            "/subscriptions", json={"handlerId": "payment", "eventKinds": ["PaymentRequested"]}
        )

        response = api_client.post("/replay", json={"fromCursor": 0, "handlerId": "payment"})

        assert response.status_code == 200
        assert response.json() == {"created": 1}
